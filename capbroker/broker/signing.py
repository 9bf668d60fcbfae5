"""
RequestSigner - turns a service auth descriptor into request headers and
query parameters.

The canonical strings below are part of the remote APIs' contracts. A
single wrong byte does not fail locally: the remote API just rejects the
signature. Timestamps are injectable so signatures are reproducible.

  hmac-query        HMAC-SHA256(secret, query + "&timestamp=" + ts), hex;
                    sent as `timestamp` and `signature` query params
  hmac-recv-window  HMAC-SHA256(secret, ts + key + recv_window + payload), hex;
                    payload is the body for POST/PUT (even when empty),
                    otherwise the query string
  hmac-passphrase   HMAC-SHA256(secret, ts + METHOD + request_path + body),
                    base64; ts is ISO-8601 with milliseconds and `Z`
"""

import base64
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Mapping, Optional

from capbroker.shared.constants import (
    BODY_SIGNED_METHODS,
    DEFAULT_RECV_WINDOW,
    HMAC_PASSPHRASE_KEY_HEADER,
    HMAC_PASSPHRASE_PASSPHRASE_HEADER,
    HMAC_PASSPHRASE_SIGN_HEADER,
    HMAC_PASSPHRASE_TIMESTAMP_HEADER,
    HMAC_QUERY_API_KEY_HEADER,
    HMAC_RECV_API_KEY_HEADER,
    HMAC_RECV_SIGN_HEADER,
    HMAC_RECV_TIMESTAMP_HEADER,
    HMAC_RECV_WINDOW_HEADER,
)
from capbroker.shared.errors import SigningError
from capbroker.shared.models import ProxyRequest, SignedRequest, iso_millis
from capbroker.shared.schemas import (
    BearerAuth,
    HeadersAuth,
    HmacPassphraseAuth,
    HmacQueryAuth,
    HmacRecvWindowAuth,
)

logger = logging.getLogger(__name__)


def _hmac_sha256(secret: str, payload: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()


def millis_timestamp(now: Optional[float] = None) -> str:
    """Unix epoch milliseconds as a decimal string."""
    return str(int((time.time() if now is None else now) * 1000))


def iso_timestamp_ms(now: Optional[datetime] = None) -> str:
    """`2024-01-15T10:30:00.000Z` - UTC, millisecond precision, literal Z."""
    return iso_millis(now or datetime.now(timezone.utc))


def sign_query_hmac(
    api_key: str,
    api_secret: str,
    query_string: str,
    timestamp: Optional[str] = None,
) -> SignedRequest:
    timestamp = timestamp or millis_timestamp()
    payload = f"{query_string}&timestamp={timestamp}" if query_string else f"timestamp={timestamp}"
    signature = _hmac_sha256(api_secret, payload).hex()
    return SignedRequest(
        headers={HMAC_QUERY_API_KEY_HEADER: api_key},
        query_params={"timestamp": timestamp, "signature": signature},
    )


def sign_recv_window_hmac(
    api_key: str,
    api_secret: str,
    method: str,
    query_string: str = "",
    body: Optional[str] = None,
    timestamp: Optional[str] = None,
    recv_window: str = DEFAULT_RECV_WINDOW,
) -> SignedRequest:
    timestamp = timestamp or millis_timestamp()
    if method.upper() in BODY_SIGNED_METHODS:
        payload = body or ""
    else:
        payload = query_string
    signature = _hmac_sha256(api_secret, f"{timestamp}{api_key}{recv_window}{payload}").hex()
    return SignedRequest(headers={
        HMAC_RECV_API_KEY_HEADER: api_key,
        HMAC_RECV_TIMESTAMP_HEADER: timestamp,
        HMAC_RECV_SIGN_HEADER: signature,
        HMAC_RECV_WINDOW_HEADER: recv_window,
    })


def sign_passphrase_hmac(
    api_key: str,
    api_secret: str,
    passphrase: str,
    method: str,
    request_path: str,
    body: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> SignedRequest:
    timestamp = timestamp or iso_timestamp_ms()
    payload = f"{timestamp}{method.upper()}{request_path}{body or ''}"
    signature = base64.b64encode(_hmac_sha256(api_secret, payload)).decode("ascii")
    return SignedRequest(headers={
        HMAC_PASSPHRASE_KEY_HEADER: api_key,
        HMAC_PASSPHRASE_SIGN_HEADER: signature,
        HMAC_PASSPHRASE_TIMESTAMP_HEADER: timestamp,
        HMAC_PASSPHRASE_PASSPHRASE_HEADER: passphrase,
    })


class RequestSigner:
    """
    Dispatches on the auth descriptor variant.

    `credentials` maps each label from `auth.references()` to the resolved
    secret value.
    """

    def __init__(self, clock=time.time):
        self._clock = clock

    def sign(self, auth, credentials: Mapping[str, str], request: ProxyRequest) -> SignedRequest:
        if isinstance(auth, BearerAuth):
            return SignedRequest(headers={"Authorization": f"Bearer {_need(credentials, 'key')}"})

        if isinstance(auth, HeadersAuth):
            return SignedRequest(headers={
                name: _need(credentials, f"headers.{name}") for name in auth.headers
            })

        if isinstance(auth, HmacQueryAuth):
            return sign_query_hmac(
                _need(credentials, "api_key"),
                _need(credentials, "api_secret"),
                request.query_string,
                timestamp=millis_timestamp(self._clock()),
            )

        if isinstance(auth, HmacRecvWindowAuth):
            return sign_recv_window_hmac(
                _need(credentials, "api_key"),
                _need(credentials, "api_secret"),
                request.method,
                query_string=request.query_string,
                body=request.body,
                timestamp=millis_timestamp(self._clock()),
                recv_window=auth.recv_window,
            )

        if isinstance(auth, HmacPassphraseAuth):
            return sign_passphrase_hmac(
                _need(credentials, "api_key"),
                _need(credentials, "api_secret"),
                _need(credentials, "passphrase"),
                request.method,
                request.path,
                body=request.body,
                timestamp=iso_timestamp_ms(datetime.fromtimestamp(self._clock(), tz=timezone.utc)),
            )

        raise SigningError(f"Unsupported auth descriptor: {type(auth).__name__}")


def _need(credentials: Mapping[str, str], label: str) -> str:
    value = credentials.get(label)
    if not value:
        raise SigningError(f"Missing credential '{label}' for signing")
    return value
