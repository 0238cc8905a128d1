"""Verification of Supabase access tokens presented as ``Authorization: Bearer``.

Two signing modes are supported:

* HS256 with the project's JWT secret (``SUPABASE_JWT_SECRET``);
* RS256/ES256 with keys published at ``{SUPABASE_URL}/auth/v1/.well-known/jwks.json``.

When the project URL is known, tokens must also carry the project's auth
issuer (``{SUPABASE_URL}/auth/v1``), so a token minted for another Supabase
project with the same audience is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient, PyJWKClientError
from starlette.requests import Request

DEFAULT_AUDIENCE = 'authenticated'
JWKS_CACHE_TTL_SECONDS = 300
CLOCK_SKEW_SECONDS = 10

_REQUIRED_CLAIMS = ['sub', 'exp', 'aud']


@dataclass(frozen=True, slots=True)
class AuthIdentity:
    """The caller behind a request. ``user_id`` is the ``auth.users`` id."""

    user_id: str
    email: str = ''
    role: str = 'authenticated'
    raw_claims: dict[str, Any] = field(default_factory=dict)


class TokenVerificationError(Exception):
    def __init__(self, code: str, detail: str = '') -> None:
        self.code = code
        self.detail = detail
        super().__init__(f'{code}: {detail}' if detail else code)


class KeyProvider(Protocol):
    def get_signing_key(self, token: str) -> Any: ...


class StaticKeyProvider:
    def __init__(self, secret: str) -> None:
        self._secret = secret

    def get_signing_key(self, token: str) -> str:
        return self._secret


class JWKSKeyProvider:
    """Resolves the key for a token's ``kid`` from the project JWKS (cached)."""

    def __init__(self, jwks_url: str, cache_ttl: int = JWKS_CACHE_TTL_SECONDS) -> None:
        self.jwks_url = jwks_url
        self._client = PyJWKClient(jwks_url, cache_jwk_set=True, lifespan=cache_ttl)

    def get_signing_key(self, token: str) -> Any:
        try:
            return self._client.get_signing_key_from_jwt(token).key
        except PyJWKClientError as exc:
            raise TokenVerificationError('jwks_fetch_error', str(exc)) from exc
        except jwt.DecodeError as exc:
            raise TokenVerificationError('invalid_token', str(exc)) from exc


class TokenVerifier:
    def __init__(
        self,
        key_provider: KeyProvider,
        audience: str = DEFAULT_AUDIENCE,
        algorithms: list[str] | None = None,
        *,
        issuer: str | None = None,
        leeway: float = CLOCK_SKEW_SECONDS,
    ) -> None:
        self._key_provider = key_provider
        self._audience = audience
        self._algorithms = algorithms or ['RS256']
        self._issuer = issuer
        self._leeway = leeway

    @property
    def issuer(self) -> str | None:
        return self._issuer

    def verify(self, token: str) -> AuthIdentity:
        """Return the identity in ``token`` or raise TokenVerificationError."""
        token = (token or '').strip()
        if not token:
            raise TokenVerificationError('empty_token')

        key = self._key_provider.get_signing_key(token)
        required = _REQUIRED_CLAIMS + (['iss'] if self._issuer else [])
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=self._algorithms,
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={'require': required},
            )
        except jwt.ExpiredSignatureError:
            raise TokenVerificationError('token_expired')
        except jwt.InvalidAudienceError:
            raise TokenVerificationError('invalid_audience', f'expected {self._audience}')
        except jwt.InvalidIssuerError:
            raise TokenVerificationError('invalid_issuer', f'expected {self._issuer}')
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError('invalid_token', str(exc))

        user_id = str(claims.get('sub') or '')
        if not user_id:
            raise TokenVerificationError('missing_sub_claim')
        return AuthIdentity(
            user_id=user_id,
            email=(claims.get('email') or '').lower(),
            role=claims.get('role') or 'authenticated',
            raw_claims=claims,
        )


def extract_bearer_token(request: Request) -> str | None:
    scheme, _, credentials = request.headers.get('authorization', '').partition(' ')
    if scheme.lower() != 'bearer' or not credentials.strip():
        return None
    return credentials.strip()


def create_token_verifier(
    supabase_url: str | None = None,
    jwt_secret: str | None = None,
    audience: str = DEFAULT_AUDIENCE,
) -> TokenVerifier:
    """Build a verifier from project settings.

    The HS256 secret wins when both are set. The project URL, when given,
    also pins the expected issuer.

    Raises:
        ValueError: If neither ``supabase_url`` nor ``jwt_secret`` is set.
    """
    base_url = (supabase_url or '').rstrip('/')
    issuer = f'{base_url}/auth/v1' if base_url else None
    if jwt_secret:
        return TokenVerifier(StaticKeyProvider(jwt_secret), audience, ['HS256'], issuer=issuer)
    if base_url:
        return TokenVerifier(
            JWKSKeyProvider(f'{issuer}/.well-known/jwks.json'),
            audience,
            ['RS256', 'ES256'],
            issuer=issuer,
        )
    raise ValueError('Either supabase_url (for JWKS) or jwt_secret (for HS256) is required')
