# api/__init__.py
from api.auth import TokenAuthenticator, current_user, issue_token
from api.server import create_app

__all__ = [
    "TokenAuthenticator",
    "current_user",
    "issue_token",
    "create_app",
]
