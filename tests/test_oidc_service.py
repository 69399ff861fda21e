from __future__ import annotations

import time
import unittest
from urllib.parse import parse_qs, urlparse

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt
from sqlalchemy import select

from kars.errors import ApiError
from kars.models import User, UserRole
from kars.services.oidc import (
    build_authorization_url,
    clear_discovery_cache,
    code_challenge_for,
    exchange_code,
    provision_user,
    role_from_claims,
)
from kars.services.settings_store import get_oidc_settings
from tests.helpers import create_user, make_session_factory

ISSUER = "https://idp.example.com"
DISCOVERY = {
    "issuer": ISSUER,
    "jwks_uri": f"{ISSUER}/jwks",
    "authorization_endpoint": f"{ISSUER}/authorize",
    "token_endpoint": f"{ISSUER}/token",
    "userinfo_endpoint": f"{ISSUER}/userinfo",
}

_SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PRIVATE_PEM = _SIGNING_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode("ascii")
PUBLIC_PEM = _SIGNING_KEY.public_key().public_bytes(
    serialization.Encoding.PEM,
    serialization.PublicFormat.SubjectPublicKeyInfo,
).decode("ascii")
JWKS = {"keys": [{**jwk.construct(PUBLIC_PEM, "RS256").to_dict(), "kid": "idp-key-1", "use": "sig"}]}


class RoleFromClaimsTests(unittest.TestCase):
    def test_highest_priority_role_wins(self) -> None:
        claims = {"realm": {"roles": ["Employee", "manager", "coordinator"]}}

        role = role_from_claims(claims, claim_path="realm.roles", default_role="employee")

        self.assertEqual(role, UserRole.MANAGER)

    def test_scalar_claim_and_defaults(self) -> None:
        self.assertEqual(role_from_claims({"role": "admin"}, claim_path="role", default_role="employee"), UserRole.ADMIN)
        self.assertEqual(role_from_claims({}, claim_path="roles", default_role="coordinator"), UserRole.COORDINATOR)
        self.assertEqual(role_from_claims({}, claim_path="roles", default_role="superuser"), UserRole.EMPLOYEE)
        self.assertEqual(
            role_from_claims({"roles": "x"}, claim_path="roles.nested", default_role="employee"),
            UserRole.EMPLOYEE,
        )


class ProvisionUserTests(unittest.TestCase):
    def setUp(self) -> None:
        self.SessionLocal = make_session_factory()

    def test_creates_new_user_from_claims(self) -> None:
        with self.SessionLocal() as db:
            user, created = provision_user(
                db,
                {
                    "sub": "idp-1",
                    "email": "New.Person@Example.com",
                    "given_name": "New",
                    "family_name": "Person",
                    "roles": ["coordinator"],
                },
            )

            self.assertTrue(created)
            self.assertEqual(user.email, "new.person@example.com")
            self.assertEqual(user.name, "New Person")
            self.assertEqual(user.role, UserRole.COORDINATOR)
            self.assertIsNone(user.password_hash)
            self.assertFalse(user.profile_complete)

    def test_links_existing_account_by_email(self) -> None:
        with self.SessionLocal() as db:
            existing = create_user(db, email="ada@example.com", role=UserRole.MANAGER)
            existing_id = existing.id

            user, created = provision_user(db, {"sub": "idp-ada", "email": "ada@example.com"})

            self.assertFalse(created)
            self.assertEqual(user.id, existing_id)
            self.assertEqual(user.oidc_sub, "idp-ada")
            self.assertEqual(user.role, UserRole.MANAGER)
            self.assertIsNotNone(user.last_login)

    def test_subject_match_updates_role_from_claims(self) -> None:
        with self.SessionLocal() as db:
            create_user(db, email="bob@example.com", oidc_sub="idp-bob")

            user, created = provision_user(db, {"sub": "idp-bob", "roles": ["admin"]})

            self.assertFalse(created)
            self.assertEqual(user.role, UserRole.ADMIN)
            self.assertEqual(len(db.scalars(select(User)).all()), 1)

    def test_missing_email_for_new_user_is_rejected(self) -> None:
        with self.SessionLocal() as db:
            with self.assertRaises(ApiError) as ctx:
                provision_user(db, {"sub": "idp-anon"})

        self.assertEqual(ctx.exception.code, "OIDC_EMAIL_MISSING")


class AuthorizationCodeFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        clear_discovery_cache()
        self.SessionLocal = make_session_factory()
        with self.SessionLocal() as db:
            row = get_oidc_settings(db)
            row.enabled = True
            row.issuer_url = ISSUER
            row.client_id = "kars-client"
            row.redirect_uri = "https://kars.example.com/auth/callback"
            db.commit()
        self.token_requests: list[dict[str, list[str]]] = []
        self.id_token_claims: dict[str, object] = {}
        self.id_token_key = PRIVATE_PEM
        self.id_token_alg = "RS256"
        self.userinfo: dict[str, object] = {"given_name": "Sam", "roles": ["manager"]}
        self.client = httpx.Client(transport=httpx.MockTransport(self._handler))

    def tearDown(self) -> None:
        self.client.close()
        clear_discovery_cache()

    def _handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=DISCOVERY)
        if request.url.path == "/jwks":
            return httpx.Response(200, json=JWKS)
        if request.url.path == "/token":
            self.token_requests.append(parse_qs(request.content.decode("utf-8")))
            id_token = jwt.encode(
                self.id_token_claims,
                self.id_token_key,
                algorithm=self.id_token_alg,
                headers={"kid": "idp-key-1"},
            )
            return httpx.Response(200, json={"id_token": id_token, "access_token": "at-1"})
        if request.url.path == "/userinfo":
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)

    def _start(self, db, **claim_overrides) -> dict[str, str]:
        started = build_authorization_url(db, client=self.client, nonce="nonce-1")
        now = int(time.time())
        self.id_token_claims = {
            "iss": ISSUER,
            "aud": "kars-client",
            "sub": "idp-9",
            "email": "sso@example.com",
            "iat": now,
            "exp": now + 300,
            "nonce": "nonce-1",
        }
        self.id_token_claims.update(claim_overrides)
        return started

    def test_authorization_url_and_exchange_use_pkce(self) -> None:
        with self.SessionLocal() as db:
            started = self._start(db)
            query = parse_qs(urlparse(started["authUrl"]).query)

            claims = exchange_code(db, code="auth-code", state=started["state"], client=self.client)

            with self.assertRaises(ApiError) as replay:
                exchange_code(db, code="auth-code", state=started["state"], client=self.client)

        self.assertEqual(query["code_challenge_method"], ["S256"])
        self.assertEqual(query["state"], [started["state"]])
        self.assertEqual(query["nonce"], ["nonce-1"])
        verifier = self.token_requests[0]["code_verifier"][0]
        self.assertEqual(query["code_challenge"], [code_challenge_for(verifier)])
        self.assertEqual(claims["sub"], "idp-9")
        self.assertEqual(claims["email"], "sso@example.com")
        self.assertEqual(claims["roles"], ["manager"])
        self.assertEqual(replay.exception.code, "OIDC_INVALID_STATE")

    def test_id_tokens_failing_verification_are_rejected(self) -> None:
        cases = {
            "foreign audience": {"aud": "some-other-client"},
            "foreign issuer": {"iss": "https://evil.example"},
            "expired": {"exp": 1},
            "replayed nonce": {"nonce": "nonce-from-another-login"},
        }
        for label, overrides in cases.items():
            with self.subTest(label), self.SessionLocal() as db:
                started = self._start(db, **overrides)
                with self.assertRaises(ApiError) as ctx:
                    exchange_code(db, code="auth-code", state=started["state"], client=self.client)

                self.assertEqual(ctx.exception.status_code, 401)
                self.assertEqual(ctx.exception.code, "OIDC_AUTH_FAILED")

    def test_token_signed_outside_the_provider_keys_is_rejected(self) -> None:
        self.id_token_key = "idp-secret"
        self.id_token_alg = "HS256"
        with self.SessionLocal() as db:
            started = self._start(db)
            with self.assertRaises(ApiError) as ctx:
                exchange_code(db, code="auth-code", state=started["state"], client=self.client)

        self.assertEqual(ctx.exception.code, "OIDC_AUTH_FAILED")

    def test_userinfo_cannot_swap_the_subject(self) -> None:
        self.userinfo = {"sub": "idp-admin", "roles": ["admin"]}
        with self.SessionLocal() as db:
            started = self._start(db)
            with self.assertRaises(ApiError) as ctx:
                exchange_code(db, code="auth-code", state=started["state"], client=self.client)

        self.assertEqual(ctx.exception.code, "OIDC_AUTH_FAILED")

    def test_disabled_provider_is_rejected(self) -> None:
        with self.SessionLocal() as db:
            get_oidc_settings(db).enabled = False
            db.commit()
            with self.assertRaises(ApiError) as ctx:
                build_authorization_url(db)

        self.assertEqual(ctx.exception.code, "OIDC_DISABLED")


if __name__ == "__main__":
    unittest.main()
