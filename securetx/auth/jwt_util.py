"""
JWT utility functions for backend session tokens.

Verification is tiered by environment so that production always checks the
signature while local development can read claims from tokens issued by a
backend whose secret it does not hold.
"""
import os
import logging
from typing import Optional, Dict, Any, List

import jwt

logger = logging.getLogger(__name__)

ENV_TIER_PRODUCTION = "production"
ENV_TIER_TEST = "test"
ENV_TIER_DEVELOPMENT = "development"

# Unsafe algorithms that should always be rejected
UNSAFE_JWT_ALGORITHMS = ["none", ""]

_HMAC_ALGORITHMS = ["HS256", "HS384", "HS512"]
_ALL_ALGORITHMS = _HMAC_ALGORITHMS + ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]


def get_environment_tier() -> str:
    """
    Get the current environment tier from SECURETX_ENV_TIER.

    Returns:
        Environment tier string (production, test, or development)
    """
    tier = os.environ.get("SECURETX_ENV_TIER", ENV_TIER_PRODUCTION).lower()
    if tier in ("prod", "production"):
        return ENV_TIER_PRODUCTION
    elif tier in ("test", "testing", "qa"):
        return ENV_TIER_TEST
    elif tier in ("dev", "development", "local"):
        return ENV_TIER_DEVELOPMENT
    logger.warning(f"Unknown environment tier: {tier}, defaulting to production")
    return ENV_TIER_PRODUCTION


def get_jwt_secret() -> Optional[str]:
    return os.environ.get("SECURETX_JWT_SECRET")


def is_safe_jwt_algorithm(algorithm: str) -> bool:
    return algorithm.lower() not in UNSAFE_JWT_ALGORITHMS


def verify_jwt_token(
    token: str,
    env_tier: Optional[str] = None,
    jwt_secret: Optional[str] = None,
    allowed_algorithms: Optional[List[str]] = None
) -> Optional[Dict[str, Any]]:
    """
    Verify a JWT token based on environment tier.

    - Production: signature and expiry verified, HS256 only
    - Test: HMAC signatures verified when a secret is available, otherwise
      only the format and expiry are checked
    - Development: claims are read without signature or expiry checks

    Args:
        token: JWT token string
        env_tier: Environment tier (defaults to SECURETX_ENV_TIER)
        jwt_secret: Secret for signature verification (defaults to SECURETX_JWT_SECRET)
        allowed_algorithms: Allowed algorithms (defaults based on env_tier)

    Returns:
        Decoded claims, or None if validation fails
    """
    if not token:
        return None

    if env_tier is None:
        env_tier = get_environment_tier()
    if jwt_secret is None:
        jwt_secret = get_jwt_secret()
    if allowed_algorithms is None:
        allowed_algorithms = ["HS256"] if env_tier == ENV_TIER_PRODUCTION else _ALL_ALGORITHMS

    try:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError:
            logger.warning("Invalid JWT format - could not decode header")
            return None

        # Always reject unsafe algorithms regardless of environment
        algorithm = header.get("alg", "")
        if not is_safe_jwt_algorithm(algorithm):
            logger.warning(f"Unsafe JWT algorithm: {algorithm}. Rejecting token.")
            return None

        if algorithm not in allowed_algorithms:
            logger.warning(f"JWT algorithm {algorithm} not allowed in {env_tier} environment. Allowed: {allowed_algorithms}")
            return None

        if env_tier == ENV_TIER_PRODUCTION:
            if not jwt_secret:
                logger.warning("Production environment requires SECURETX_JWT_SECRET to be set")
                return None
            return jwt.decode(
                token,
                jwt_secret,
                algorithms=allowed_algorithms,
                options={"verify_signature": True, "verify_exp": True}
            )

        elif env_tier == ENV_TIER_TEST:
            if algorithm.upper() in _HMAC_ALGORITHMS and jwt_secret:
                try:
                    return jwt.decode(
                        token,
                        jwt_secret,
                        algorithms=[algorithm],
                        options={"verify_signature": True, "verify_exp": True}
                    )
                except jwt.InvalidSignatureError:
                    logger.warning(f"Invalid JWT signature in test environment with {algorithm}")
            decoded = jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
            logger.info(f"JWT signature verification skipped in test environment (algorithm: {algorithm})")
            return decoded

        decoded = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
        logger.debug(f"JWT signature verification skipped in development environment (algorithm: {algorithm})")
        return decoded

    except jwt.ExpiredSignatureError:
        logger.warning(f"JWT token has expired (environment: {env_tier})")
        return None
    except jwt.InvalidSignatureError:
        logger.warning(f"Invalid JWT signature (environment: {env_tier})")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"JWT token validation failed: {e}")
        return None


def extract_claim_from_jwt(
    token: str,
    claim_name: str,
    env_tier: Optional[str] = None,
    jwt_secret: Optional[str] = None
) -> Optional[Any]:
    """Extract a single claim from a verified JWT token."""
    decoded = verify_jwt_token(token, env_tier, jwt_secret)
    if decoded:
        return decoded.get(claim_name)
    return None
