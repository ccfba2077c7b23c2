"""
Web interface: Flask routes and token verification.
"""

from .auth import AuthenticationError, TokenVerifier
from .routes import WebRoutes

__all__ = ['AuthenticationError', 'TokenVerifier', 'WebRoutes']
