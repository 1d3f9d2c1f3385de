"""
Clerk JWT verification.

Handles:
- HS256 verification with CLERK_SECRET_KEY (development/testing)
- RS256 verification against JWKS, fetched with httpx and held in a TTLCache
- Plan-flag extraction from the ``pla`` claim and public_metadata

Testing:
- Use create_test_jwt() to create test tokens
- Inject a JWKS fetcher via set_jwks_fetcher() (no network)
"""
import json
import time
from typing import Any, Callable, Dict, Optional, Set

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from interview_billing.core.cache import TTLCache
from interview_billing.core.config import settings

JwksFetcher = Callable[[str], Dict[str, Any]]


def _default_fetch_jwks(jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=5.0)
    response.raise_for_status()
    return response.json()


_jwks_fetcher: JwksFetcher = _default_fetch_jwks
_jwks_cache = TTLCache(max_entries=8, ttl_seconds=settings.JWKS_CACHE_TTL_SECONDS)


def set_jwks_fetcher(fetcher: Optional[JwksFetcher], cache: Optional[TTLCache] = None) -> None:
    """Swap the JWKS fetcher (and optionally its cache); ``None`` restores the default."""
    global _jwks_fetcher, _jwks_cache
    _jwks_fetcher = fetcher or _default_fetch_jwks
    if cache is not None:
        _jwks_cache = cache
    _jwks_cache.clear()


def resolve_jwks_url() -> Optional[str]:
    if settings.CLERK_JWKS_URL:
        return settings.CLERK_JWKS_URL
    if settings.CLERK_ISSUER:
        return f"{settings.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"
    return None


def get_jwks(jwks_url: str) -> Dict[str, Any]:
    """Fetch JWKS through the cache."""
    jwks = _jwks_cache.get(jwks_url)
    if jwks is None:
        jwks = _jwks_fetcher(jwks_url)
        _jwks_cache.set(jwks_url, jwks)
    return jwks


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify a Clerk session JWT and return its claims.

    Raises jwt.PyJWTError on invalid token.
    """
    secret = settings.CLERK_SECRET_KEY
    jwks_url = resolve_jwks_url()

    if secret and not jwks_url:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    if not jwks_url:
        raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

    unverified_header = jwt.get_unverified_header(token)
    kid = unverified_header.get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    matching_key = None
    for key in get_jwks(jwks_url).get("keys", []):
        if key.get("kid") == kid:
            matching_key = key
            break
    if not matching_key:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)}
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE,
        issuer=settings.CLERK_ISSUER,
        options=options,
    )


def current_plan_claims(claims: Dict[str, Any]) -> Set[str]:
    """
    Plan flags held by the caller.

    Clerk billing encodes plans in the ``pla`` claim as a comma separated list
    of scoped slugs (``"u:starter,o:team"``); user scoped entries are kept with
    their scope stripped. ``public_metadata.plan`` is honoured as well.
    """
    flags: Set[str] = set()

    raw = claims.get("pla")
    if isinstance(raw, str):
        entries = raw.split(",")
    elif isinstance(raw, (list, tuple)):
        entries = [str(item) for item in raw]
    else:
        entries = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        scope, sep, slug = entry.partition(":")
        if not sep:
            flags.add(entry.lower())
        elif scope == "u" and slug:
            flags.add(slug.strip().lower())

    public_metadata = claims.get("public_metadata") or {}
    if isinstance(public_metadata, dict):
        plan = public_metadata.get("plan")
        if isinstance(plan, str) and plan.strip():
            flags.add(plan.strip().lower())

    return flags


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_jwt(
    sub: str = "user_test_123",
    email: Optional[str] = "test@example.com",
    plans: Optional[str] = None,
    public_plan: Optional[str] = None,
    exp_minutes: int = 60,
    secret: str = "test-secret-key",
    algorithm: str = "HS256",
    private_key: Optional[str] = None,
    kid: Optional[str] = None,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    """
    Create a test JWT for unit testing.
    Supports HS256 (default) and RS256 (for JWKS-based tests).

    Args:
        sub: Clerk user ID (subject)
        plans: Raw ``pla`` claim, e.g. "u:starter"
        public_plan: Value for public_metadata.plan
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "iss": issuer or settings.CLERK_ISSUER or "https://test.clerk.accounts.dev",
        "aud": audience or settings.CLERK_AUDIENCE or "test-audience",
        "public_metadata": {},
    }
    if plans is not None:
        payload["pla"] = plans
    if public_plan:
        payload["public_metadata"]["plan"] = public_plan

    headers = {"kid": kid} if kid else None
    key = private_key if algorithm == "RS256" and private_key else secret
    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)
