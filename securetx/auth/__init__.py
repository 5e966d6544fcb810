"""
Session handling for the SecureTx backend.
"""
from .client import AuthClient, AuthenticationError
from .jwt_util import extract_claim_from_jwt, verify_jwt_token

__all__ = ["AuthClient", "AuthenticationError", "verify_jwt_token", "extract_claim_from_jwt"]
