# atlas_board/Catalog/__init__.py
