# API Routers
from hotelops.routers import auth, permissions, role_history

__all__ = ['auth', 'permissions', 'role_history']
