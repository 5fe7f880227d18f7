"""HTTP plumbing shared by the provider adapters."""

from __future__ import annotations

import logging
import random
import re
from typing import Dict, Iterator, List, Optional, Tuple, Union

import requests

from ..config import ProviderConfig
from ..errors import CancelledError, LLMError, ServerError, classify
from ..models import CancellationToken

logger = logging.getLogger(__name__)

Timeout = Optional[Union[float, Tuple[float, Optional[float]]]]

_KEY_SPLIT = re.compile(r"[,\n]")


class KeyRoulette:
    """Pick one credential at random from a provider's configured keys."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def next(self, keys: List[str]) -> str:
        candidates: List[str] = []
        for entry in keys:
            candidates.extend(part.strip() for part in _KEY_SPLIT.split(entry or "") if part.strip())
        if not candidates:
            return ""
        return self._rng.choice(candidates)


def build_url(config: ProviderConfig, path: str) -> str:
    return f"{config.base_url.rstrip('/')}{path}"


def bearer_headers(key: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    if extra:
        headers.update(extra)
    if key:
        headers["Authorization"] = f"Bearer {key}"
    return headers


class HttpTransport:
    """Sends requests through ``requests`` and maps failures to LLM errors."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()

    def get_json(
        self,
        config: ProviderConfig,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Timeout = None,
    ) -> Dict[str, object]:
        try:
            response = self.session.get(
                url,
                headers=headers,
                proxies=config.proxy.as_requests_proxies(),
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise classify(exc) from exc
        self._raise_for_status(response)
        return self._decode(response)

    def post_json(
        self,
        config: ProviderConfig,
        url: str,
        payload: Dict[str, object],
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Timeout = None,
    ) -> Dict[str, object]:
        try:
            response = self.session.post(
                url,
                json=payload,
                headers=headers,
                proxies=config.proxy.as_requests_proxies(),
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise classify(exc) from exc
        self._raise_for_status(response)
        return self._decode(response)

    def stream_lines(
        self,
        config: ProviderConfig,
        url: str,
        payload: Dict[str, object],
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: Timeout = None,
        token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        """POST ``payload`` and yield decoded response lines.

        The response is closed when ``token`` is cancelled; any read error that
        follows a cancellation surfaces as :class:`CancelledError`.
        """
        if token is not None and token.cancelled:
            raise CancelledError("Cancelled before the request was sent")
        try:
            response = self.session.post(
                url,
                json=payload,
                headers=headers,
                proxies=config.proxy.as_requests_proxies(),
                timeout=timeout,
                stream=True,
            )
        except requests.RequestException as exc:
            raise classify(exc) from exc

        try:
            self._raise_for_status(response)
            if token is not None:
                token.add_callback(response.close)
            for raw_line in response.iter_lines():
                if token is not None and token.cancelled:
                    raise CancelledError("Stream cancelled")
                if not raw_line:
                    continue
                if isinstance(raw_line, bytes):
                    raw_line = raw_line.decode("utf-8", errors="replace")
                yield raw_line
        except LLMError:
            raise
        except Exception as exc:
            if token is not None and token.cancelled:
                raise CancelledError("Stream cancelled", cause=exc) from exc
            raise classify(exc) from exc
        finally:
            response.close()

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if 200 <= response.status_code < 300:
            return
        try:
            body = response.text
        except Exception:
            body = ""
        response.close()
        logger.warning("Provider returned HTTP %d: %s", response.status_code, body[:500])
        raise ServerError(f"HTTP {response.status_code}: {body[:200]}", status_code=response.status_code)

    @staticmethod
    def _decode(response: requests.Response) -> Dict[str, object]:
        try:
            data = response.json()
        except ValueError as exc:
            raise ServerError("Invalid JSON response from provider", status_code=response.status_code, cause=exc) from exc
        if not isinstance(data, dict):
            raise ServerError("Unexpected response shape from provider", status_code=response.status_code)
        return data
