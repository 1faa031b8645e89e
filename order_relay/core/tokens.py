"""Two-tier bearer token cache and its single-writer refresher.

Issuance is owned by ``TokenRefresher`` alone, which runs on its own schedule
and overwrites the durable slot. Request handlers only ever call
``TokenCache.get_token()``: it serves the process-local copy and falls back to
one read of the durable slot when the local copy is empty (every cold start)
or past its expiry. It never asks the identity provider for a token.
"""

import asyncio
import json
import logging
from collections.abc import Sequence

import httpx

from order_relay.core.errors import AuthError, TokenUnavailable, UpstreamCallFailure
from order_relay.core.stores import ValueSlot
from order_relay.core.time_utils import Clock, utc_now
from order_relay.core.types import CachedToken

logger = logging.getLogger(__name__)

_AUTH_REJECTED_STATUSES = frozenset({400, 401, 403})


class TokenCache:
    """Process-local token cache backed by the durable slot."""

    def __init__(self, slot: ValueSlot, clock: Clock = utc_now) -> None:
        self._slot = slot
        self._clock = clock
        self._local: CachedToken | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> CachedToken | None:
        return self._local

    def clear(self) -> None:
        """Drop the local copy, as a fresh process would start."""

        self._local = None

    async def get_token(self) -> str:
        local = self._local
        if local is not None and not local.is_expired(self._clock()):
            return local.value

        async with self._lock:
            # another caller may have filled the cache while we waited
            local = self._local
            if local is not None and not local.is_expired(self._clock()):
                return local.value

            token = await self._read_slot()
            self._local = token
            logger.info("token_cache_populated", extra={"slot": self._slot.name, "scope": list(token.scope)})
            return token.value

    async def _read_slot(self) -> CachedToken:
        raw = await self._slot.read()
        if not raw:
            raise TokenUnavailable(f"token slot '{self._slot.name}' has not been populated")
        try:
            token = CachedToken.from_slot(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise TokenUnavailable(f"token slot '{self._slot.name}' holds an unreadable value") from exc
        if not token.value or token.value == "none":
            raise TokenUnavailable(f"token slot '{self._slot.name}' has not been populated")
        if token.is_expired(self._clock()):
            raise TokenUnavailable(f"token slot '{self._slot.name}' holds an expired token")
        return token


class IdentityClient:
    """OAuth2 client-credentials grant against the identity provider's token endpoint."""

    def __init__(self, auth_url: str, http: httpx.AsyncClient) -> None:
        self._token_url = f"{auth_url.rstrip('/')}/oauth2/token"
        self._http = http

    async def issue_token(
        self,
        client_id: str,
        client_secret: str,
        scopes: Sequence[str],
        clock: Clock = utc_now,
    ) -> CachedToken:
        try:
            response = await self._http.post(
                self._token_url,
                data={"grant_type": "client_credentials", "scope": " ".join(scopes)},
                auth=(client_id, client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise UpstreamCallFailure(f"token endpoint unreachable: {exc}") from exc

        if response.status_code in _AUTH_REJECTED_STATUSES:
            raise AuthError(
                f"identity provider rejected credentials or scope: {_oauth_error(response)}",
                status_code=response.status_code,
            )
        if response.is_error:
            raise UpstreamCallFailure(
                f"token endpoint returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            access_token = str(body["access_token"])
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamCallFailure("token endpoint returned an unreadable body") from exc

        granted = str(body.get("scope") or " ".join(scopes)).split()
        missing = [scope for scope in scopes if scope not in granted]
        if missing:
            raise AuthError(f"identity provider did not grant scopes: {', '.join(missing)}")

        expires_in = body.get("expires_in")
        return CachedToken(
            value=access_token,
            scope=tuple(granted),
            issued_at=clock(),
            expires_in_s=int(expires_in) if expires_in is not None else None,
        )


def _oauth_error(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"status {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"status {response.status_code}"


class TokenRefresher:
    """The only writer of the durable token slot."""

    def __init__(
        self,
        identity: IdentityClient,
        slot: ValueSlot,
        client_id: str,
        client_secret: str,
        scopes: Sequence[str],
        clock: Clock = utc_now,
    ) -> None:
        self._identity = identity
        self._slot = slot
        self._client_id = client_id
        self._client_secret = client_secret
        self._scopes = tuple(scopes)
        self._clock = clock

    async def refresh(self) -> CachedToken:
        """Issue a new token and overwrite the slot; failures leave the slot untouched."""

        token = await self._identity.issue_token(
            self._client_id,
            self._client_secret,
            self._scopes,
            clock=self._clock,
        )
        await self._slot.write(json.dumps(token.to_slot()))
        return token
