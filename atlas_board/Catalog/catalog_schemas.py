# atlas_board/Catalog/catalog_schemas.py
#
# Imports
import secrets
import time
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Literal, Type
#
# 3rd-party Libraries
from pydantic import BaseModel, ConfigDict, Field, ValidationError
#
# Local Imports
from ..DB.Document_Store import InputError
#
########################################################################################################################
#
# Functions:

DocType = Literal['country', 'message', 'comment']
DOC_TYPES = ('country', 'message', 'comment')


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def make_document_id(doc_type: str) -> str:
    """`{type}_{epoch_millis}_{random hex}`. The random part keeps bulk-generated ids apart."""
    return f"{doc_type}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def type_prefix_range(doc_type: str) -> tuple:
    return f"{doc_type}_", f"{doc_type}_\uffff"


# --- Document field models ---
class CatalogFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')


class CountryFields(CatalogFields):
    name: str = Field(min_length=1)
    capital: str = ""
    population: int = Field(default=0, ge=0)
    area: float = Field(default=0, ge=0)
    currency: str = ""
    languages: List[str] = Field(default_factory=list)
    region: str = Field(min_length=1)
    subregion: str = ""
    flag: str = ""


class MessageFields(CatalogFields):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    country_id: str = Field(alias='countryId', min_length=1)
    likes: int = Field(default=0, ge=0)
    created_at: Optional[str] = Field(default=None, alias='createdAt')
    updated_at: Optional[str] = Field(default=None, alias='updatedAt')


class CommentFields(CatalogFields):
    content: str = Field(min_length=1)
    author: str = Field(min_length=1)
    message_id: str = Field(alias='messageId', min_length=1)
    created_at: Optional[str] = Field(default=None, alias='createdAt')


FIELD_MODELS: Dict[str, Type[CatalogFields]] = {
    'country': CountryFields,
    'message': MessageFields,
    'comment': CommentFields,
}


def _format_validation_error(doc_type: str, error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {item.get('msg')}")
    return f"Invalid {doc_type}: " + "; ".join(parts)


def validate_fields(doc_type: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validates type-specific fields and returns them in wire (camelCase) form.

    Raises:
        InputError: For an unknown type or invalid fields.
    """
    model = FIELD_MODELS.get(doc_type)
    if model is None:
        raise InputError(f"Unknown document type: '{doc_type}'")
    clean = {k: v for k, v in fields.items() if not k.startswith("_") and k != "type"}
    try:
        validated = model.model_validate(clean)
    except ValidationError as e:
        raise InputError(_format_validation_error(doc_type, e)) from e
    return validated.model_dump(by_alias=True, exclude_none=True)


def new_document(doc_type: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    The only constructor for catalog documents: mints the id and sets `type` together.
    """
    body = validate_fields(doc_type, fields)
    if doc_type in ('message', 'comment'):
        body.setdefault('createdAt', utc_now_iso())
    doc = {"_id": make_document_id(doc_type), "type": doc_type}
    doc.update(body)
    return doc

#
# End of atlas_board/Catalog/catalog_schemas.py
########################################################################################################################
