# atlas_board/remote_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class RemoteAPIError(Exception):
    """Base exception for remote_api errors."""
    pass

class APIConnectionError(RemoteAPIError):
    """Raised for network or connection issues."""
    pass

class APIResponseError(RemoteAPIError):
    """Raised for non-2xx responses or issues parsing the response."""
    def __init__(self, status_code: int, message: str, response_data: dict = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.response_data = response_data or {}

class AuthenticationError(APIResponseError):
    """Raised for authentication failures (401)."""
    def __init__(self, message: str, response_data: dict = None):
        super().__init__(401, message, response_data)

class PermissionDeniedError(APIResponseError):
    """Raised when the server refuses the operation for this user (403)."""
    def __init__(self, message: str, response_data: dict = None):
        super().__init__(403, message, response_data)

class RemoteConflictError(APIResponseError):
    """Raised when the server reports a revision conflict (409)."""
    def __init__(self, message: str, response_data: dict = None):
        super().__init__(409, message, response_data)

#
# End of atlas_board/remote_api/exceptions.py
########################################################################################################################
