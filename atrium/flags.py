"""Boolean feature flags.

Providers are consulted in order and the first one with an opinion wins:
a remote OFREP evaluation service when configured, then environment
variables. A provider returns None when it has no value for a flag.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

BACKGROUND_BUCKET_SIZE_FLAG = "enable-background-bucket-size-calculation"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


@runtime_checkable
class FlagProvider(Protocol):
    async def resolve_boolean(self, key: str) -> bool | None:
        """Return the flag value, or None if this provider does not know it."""
        ...


def parse_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return None


class EnvFlagProvider:
    """Flags from environment variables.

    ``enable-background-bucket-size-calculation`` is read from
    ``ENABLE_BACKGROUND_BUCKET_SIZE_CALCULATION``.
    """

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    @staticmethod
    def variable_name(key: str) -> str:
        return key.upper().replace("-", "_").replace(".", "_")

    async def resolve_boolean(self, key: str) -> bool | None:
        return parse_bool(self._environ.get(self.variable_name(key)))


class OFREPFlagProvider:
    """Remote flag evaluation over the OpenFeature Remote Evaluation Protocol."""

    def __init__(
        self,
        endpoint: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def resolve_boolean(self, key: str) -> bool | None:
        url = f"{self._endpoint}/ofrep/v1/evaluate/flags/{key}"
        try:
            resp = await self._client.post(url, json={"context": {}})
        except httpx.HTTPError as e:
            logger.warning("Flag service unreachable for %s: %s", key, e)
            return None

        if resp.status_code == 404:
            return None
        if not resp.is_success:
            logger.warning("Flag service returned %d for %s", resp.status_code, key)
            return None
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Flag service returned invalid JSON for %s", key)
            return None
        if not isinstance(data, dict):
            logger.warning("Flag service returned a non-object for %s", key)
            return None
        if data.get("errorCode"):
            logger.warning("Flag %s evaluation error: %s", key, data["errorCode"])
            return None
        value = data.get("value")
        return value if isinstance(value, bool) else None

    async def aclose(self) -> None:
        await self._client.aclose()


class FlagResolver:
    """First-match composition of flag providers."""

    def __init__(self, providers: list[FlagProvider]) -> None:
        self._providers = list(providers)

    async def is_enabled(self, key: str, default: bool = False) -> bool:
        for provider in self._providers:
            try:
                value = await provider.resolve_boolean(key)
            except Exception:
                logger.exception("Flag provider %s failed for %s", type(provider).__name__, key)
                continue
            if value is not None:
                return value
        return default

    async def aclose(self) -> None:
        for provider in self._providers:
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()


def build_flag_resolver(ofrep_endpoint: str = "") -> FlagResolver:
    providers: list[FlagProvider] = []
    if ofrep_endpoint:
        providers.append(OFREPFlagProvider(ofrep_endpoint))
    providers.append(EnvFlagProvider())
    return FlagResolver(providers)
