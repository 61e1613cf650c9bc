# Security module
from hotelops.security.auth import (
    get_password_hash, verify_password, create_access_token,
    get_user_context, require_authenticated, require_permission
)

__all__ = [
    'get_password_hash', 'verify_password', 'create_access_token',
    'get_user_context', 'require_authenticated', 'require_permission'
]
