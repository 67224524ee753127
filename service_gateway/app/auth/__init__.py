"""
Authorization gate for the gateway.
"""

from .gate import AllowAllAuthorizer, AuthDecision, IntrospectionAuthorizer, build_authorizer

__all__ = [
    "AllowAllAuthorizer",
    "AuthDecision",
    "IntrospectionAuthorizer",
    "build_authorizer",
]
