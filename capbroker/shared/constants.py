"""
Named constants used in place of magic numbers throughout the codebase.

All tunable limits, header names and defaults are defined here as named
constants. Header names for the HMAC signing schemes are part of the
remote APIs' contracts and must not be changed.
"""

# ── Sessions ─────────────────────────────────────────────────

SESSION_ID_PREFIX = "sess_"
"""Prefix of every session identifier handed to agents."""

SESSION_TOKEN_BYTES = 32
"""Entropy (bytes) of the random part of a session identifier."""

DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0
"""Interval of the background sweep that reaps expired sessions."""

SESSION_ID_LOG_PREFIX = 12
"""Characters of a session id that may appear in log lines."""

# ── Providers ────────────────────────────────────────────────

DEFAULT_PROVIDER_NAME = "local"
"""Provider used for bare (scheme-less) secret references."""

PROVIDER_MAX_RETRIES = 3
"""Attempts for a retryable (rate-limited) provider call, including the first."""

PROVIDER_BACKOFF_SECONDS = 0.5
"""Base delay of the exponential backoff between provider retries."""

AES_KEY_BYTES = 32
"""AES-256 master key size."""

AES_NONCE_BYTES = 12
"""GCM nonce size stored at the front of every envelope."""

VAULT_RENEW_MARGIN_SECONDS = 60
"""Renew a Vault token this many seconds before it expires."""

VAULT_DEFAULT_FIELD = "value"
"""KV field read when a Vault reference carries no #field suffix."""

# ── Upstream execution ───────────────────────────────────────

UPSTREAM_TIMEOUT_SECONDS = 30.0
"""Upper bound for a single outbound call to a third-party API."""

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH"})
"""HTTP methods the broker is willing to forward."""

BODY_SIGNED_METHODS = frozenset({"POST", "PUT"})
"""Methods whose request body (not query string) is signed under the
receive-window HMAC scheme."""

HOP_BY_HOP_HEADERS = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade", "host", "content-length",
})
"""Caller headers that are never forwarded upstream."""

REDACTED = "[REDACTED]"
"""Replacement for secret material found in upstream responses."""

MIN_SCRUB_LENGTH = 4
"""Secret values shorter than this are not scrubbed from upstream responses.
A one to three character value matches unrelated bytes in nearly any body."""

# ── Signing header names ─────────────────────────────────────

HMAC_QUERY_API_KEY_HEADER = "X-MEXC-APIKEY"

HMAC_RECV_API_KEY_HEADER = "X-BAPI-API-KEY"
HMAC_RECV_TIMESTAMP_HEADER = "X-BAPI-TIMESTAMP"
HMAC_RECV_SIGN_HEADER = "X-BAPI-SIGN"
HMAC_RECV_WINDOW_HEADER = "X-BAPI-RECV-WINDOW"
DEFAULT_RECV_WINDOW = "5000"

HMAC_PASSPHRASE_KEY_HEADER = "OK-ACCESS-KEY"
HMAC_PASSPHRASE_SIGN_HEADER = "OK-ACCESS-SIGN"
HMAC_PASSPHRASE_TIMESTAMP_HEADER = "OK-ACCESS-TIMESTAMP"
HMAC_PASSPHRASE_PASSPHRASE_HEADER = "OK-ACCESS-PASSPHRASE"

# ── Audit ────────────────────────────────────────────────────

AUDIT_FILE_PREFIX = "audit-"
AUDIT_FILE_SUFFIX = ".jsonl"
AUDIT_GENESIS_HASH = "genesis"
"""prev_hash of the first record in each day's audit file."""
