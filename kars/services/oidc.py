from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import jwt
from jose.exceptions import JOSEError
from sqlalchemy import select
from sqlalchemy.orm import Session

from kars.errors import ApiError
from kars.models import User, UserRole
from kars.services.settings_store import resolve_oidc_config
from kars.services.ttl_store import ExpiringStore
from kars.settings import get_settings
from kars.timeutils import utc_now

logger = logging.getLogger("kars.oidc")

ROLE_PRIORITY: tuple[UserRole, ...] = (
    UserRole.ADMIN,
    UserRole.MANAGER,
    UserRole.COORDINATOR,
    UserRole.EMPLOYEE,
)

# PKCE code verifier and nonce keyed by the OAuth ``state`` parameter.
code_verifier_store: ExpiringStore[dict[str, str]] = ExpiringStore(
    max(60, get_settings().oidc_state_ttl_seconds),
    name="oidc_code_verifiers",
)

_discovery_cache: dict[str, dict[str, Any]] = {}
_jwks_cache: dict[str, dict[str, Any]] = {}


def generate_code_verifier() -> str:
    return secrets.token_urlsafe(64)[:96]


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _require_config(db: Session) -> dict[str, Any]:
    config = resolve_oidc_config(db)
    if not config["enabled"]:
        raise ApiError(status_code=400, code="OIDC_DISABLED", message="OIDC is not enabled")
    if not (config["issuer_url"] and config["client_id"] and config["redirect_uri"]):
        raise ApiError(status_code=500, code="OIDC_NOT_CONFIGURED", message="OIDC is not fully configured")
    return config


def fetch_discovery(issuer_url: str, *, client: httpx.Client | None = None) -> dict[str, Any]:
    issuer = issuer_url.rstrip("/")
    cached = _discovery_cache.get(issuer)
    if cached is not None:
        return cached
    http = client or httpx.Client(timeout=15.0)
    try:
        response = http.get(f"{issuer}/.well-known/openid-configuration")
        response.raise_for_status()
        document = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("oidc_discovery_failed", extra={"issuer": issuer, "error": str(exc)[:200]})
        raise ApiError(status_code=502, code="OIDC_DISCOVERY_FAILED", message="Could not reach the identity provider") from exc
    finally:
        if client is None:
            http.close()
    _discovery_cache[issuer] = document
    return document


def fetch_jwks(jwks_uri: str, *, client: httpx.Client | None = None) -> dict[str, Any]:
    cached = _jwks_cache.get(jwks_uri)
    if cached is not None:
        return cached
    http = client or httpx.Client(timeout=15.0)
    try:
        response = http.get(jwks_uri)
        response.raise_for_status()
        document = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("oidc_jwks_failed", extra={"jwks_uri": jwks_uri, "error": str(exc)[:200]})
        raise ApiError(status_code=502, code="OIDC_DISCOVERY_FAILED", message="Could not load identity provider keys") from exc
    finally:
        if client is None:
            http.close()
    _jwks_cache[jwks_uri] = document
    return document


def clear_discovery_cache() -> None:
    _discovery_cache.clear()
    _jwks_cache.clear()


def public_config(db: Session) -> dict[str, Any]:
    config = resolve_oidc_config(db)
    return {"enabled": bool(config["enabled"]), "buttonText": config["button_text"]}


def build_authorization_url(
    db: Session,
    *,
    client: httpx.Client | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    config = _require_config(db)
    discovery = fetch_discovery(config["issuer_url"], client=client)
    state = secrets.token_urlsafe(32)
    verifier = generate_code_verifier()
    nonce = nonce or secrets.token_urlsafe(24)
    code_verifier_store.set(state, {"verifier": verifier, "nonce": nonce})
    query = urlencode(
        {
            "response_type": "code",
            "client_id": config["client_id"],
            "redirect_uri": config["redirect_uri"],
            "scope": config["scope"] or "openid email profile",
            "state": state,
            "nonce": nonce,
            "code_challenge": code_challenge_for(verifier),
            "code_challenge_method": "S256",
        }
    )
    return {"authUrl": f"{discovery['authorization_endpoint']}?{query}", "state": state}


def _auth_failed(message: str = "OIDC authentication failed") -> ApiError:
    return ApiError(status_code=401, code="OIDC_AUTH_FAILED", message=message)


def verify_id_token(
    id_token: str,
    *,
    config: dict[str, Any],
    discovery: dict[str, Any],
    nonce: str,
    access_token: str | None = None,
    client: httpx.Client | None = None,
) -> dict[str, Any]:
    """Check signature, audience, issuer, expiry and nonce of a provider id token."""
    jwks_uri = discovery.get("jwks_uri")
    if not jwks_uri:
        raise ApiError(status_code=502, code="OIDC_DISCOVERY_FAILED", message="Identity provider publishes no signing keys")
    keys = fetch_jwks(jwks_uri, client=client)
    # Public-key algorithms only.
    algorithms = [
        alg
        for alg in discovery.get("id_token_signing_alg_values_supported") or []
        if alg != "none" and not alg.startswith("HS")
    ] or ["RS256"]
    issuer = discovery.get("issuer") or config["issuer_url"].rstrip("/")
    try:
        claims = jwt.decode(
            id_token,
            keys,
            algorithms=algorithms,
            audience=config["client_id"],
            issuer=issuer,
            access_token=access_token,
        )
    except JOSEError as exc:
        logger.warning("oidc_id_token_rejected", extra={"error": str(exc)[:200]})
        raise _auth_failed() from exc
    if claims.get("nonce") != nonce:
        logger.warning("oidc_id_token_nonce_mismatch")
        raise _auth_failed()
    return claims


def exchange_code(
    db: Session,
    *,
    code: str,
    state: str,
    client: httpx.Client | None = None,
) -> dict[str, Any]:
    """Swap the authorization code for provider claims.

    The id token is verified first; userinfo claims are merged on top but may
    never change the subject.
    """
    pending = code_verifier_store.pop(state)
    if pending is None:
        raise ApiError(status_code=400, code="OIDC_INVALID_STATE", message="Invalid or expired OIDC state")

    config = _require_config(db)
    discovery = fetch_discovery(config["issuer_url"], client=client)
    http = client or httpx.Client(timeout=15.0)
    try:
        token_response = http.post(
            discovery["token_endpoint"],
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config["redirect_uri"],
                "client_id": config["client_id"],
                "client_secret": config["client_secret"] or "",
                "code_verifier": pending["verifier"],
            },
            headers={"accept": "application/json"},
        )
        token_response.raise_for_status()
        tokens = token_response.json()

        id_token = tokens.get("id_token")
        if not id_token:
            raise _auth_failed("OIDC response did not include an id token")
        access_token = tokens.get("access_token")
        claims = verify_id_token(
            id_token,
            config=config,
            discovery=discovery,
            nonce=pending["nonce"],
            access_token=access_token,
            client=http,
        )

        userinfo_endpoint = discovery.get("userinfo_endpoint")
        if userinfo_endpoint and access_token:
            userinfo_response = http.get(userinfo_endpoint, headers={"authorization": f"Bearer {access_token}"})
            if userinfo_response.status_code < 400:
                userinfo = userinfo_response.json()
                if userinfo.get("sub") not in (None, claims.get("sub")):
                    logger.warning("oidc_userinfo_subject_mismatch")
                    raise _auth_failed()
                claims.update({key: value for key, value in userinfo.items() if key != "sub"})
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("oidc_token_exchange_failed", extra={"error": str(exc)[:200]})
        raise _auth_failed() from exc
    finally:
        if client is None:
            http.close()

    if not claims.get("sub"):
        raise _auth_failed("OIDC response did not include a subject")
    return claims


def _claim_at_path(claims: dict[str, Any], path: str) -> Any:
    current: Any = claims
    for part in (path or "").split("."):
        if not part:
            continue
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def role_from_claims(claims: dict[str, Any], *, claim_path: str, default_role: str) -> UserRole:
    raw = _claim_at_path(claims, claim_path)
    values = raw if isinstance(raw, list) else [raw] if raw else []
    normalized = {str(item).strip().lower() for item in values}
    for role in ROLE_PRIORITY:
        if role.value in normalized:
            return role
    try:
        return UserRole(default_role)
    except ValueError:
        return UserRole.EMPLOYEE


def provision_user(db: Session, claims: dict[str, Any]) -> tuple[User, bool]:
    """Find or create the local account for provider claims. Returns ``(user, created)``."""
    config = resolve_oidc_config(db)
    subject = str(claims["sub"])
    email = str(claims.get("email") or "").strip().lower()
    role = role_from_claims(
        claims,
        claim_path=config["role_claim_path"],
        default_role=config["default_role"],
    )

    user = db.scalar(select(User).where(User.oidc_sub == subject))
    if user is None and email:
        user = db.scalar(select(User).where(User.email == email))
        if user is not None:
            user.oidc_sub = subject

    created = False
    if user is None:
        if not email:
            raise ApiError(status_code=400, code="OIDC_EMAIL_MISSING", message="Identity provider did not return an email")
        first_name = claims.get("given_name") or ""
        last_name = claims.get("family_name") or ""
        user = User(
            email=email,
            password_hash=None,
            name=claims.get("name") or f"{first_name} {last_name}".strip() or email,
            first_name=first_name or None,
            last_name=last_name or None,
            role=role,
            oidc_sub=subject,
            profile_complete=False,
            email_verified=True,
        )
        db.add(user)
        created = True
    elif _claim_at_path(claims, config["role_claim_path"]):
        user.role = role

    user.last_login = utc_now()
    db.commit()
    db.refresh(user)
    logger.info("oidc_user_resolved", extra={"user_id": user.id, "created": created})
    return user, created
