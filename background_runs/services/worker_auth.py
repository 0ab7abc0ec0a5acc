"""Shared-secret authorization for worker endpoints."""

import re
import secrets
from dataclasses import dataclass
from typing import List, Mapping, Optional

WORKER_TOKEN_HEADER = "x-worker-token"

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class WorkerAuthorization:
    ok: bool
    method: Optional[str] = None  # "header-token" | "bearer-token"
    error: Optional[str] = None


def _normalize(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from an 'Authorization: Bearer <token>' header value."""
    value = _normalize(authorization)
    if not value:
        return None
    match = _BEARER_PATTERN.match(value)
    if not match:
        return None
    return _normalize(match.group(1))


def configured_worker_tokens(settings) -> List[str]:
    """WORKER_TOKEN and CRON_SECRET, blanks dropped, deduplicated in order."""
    tokens: List[str] = []
    for candidate in (settings.WORKER_TOKEN, settings.CRON_SECRET):
        token = _normalize(candidate)
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def _matches(candidate: Optional[str], tokens: List[str]) -> bool:
    if not candidate:
        return False
    # Check every token so timing does not reveal which one matched
    matched = False
    for token in tokens:
        if secrets.compare_digest(candidate.encode(), token.encode()):
            matched = True
    return matched


def authorize_worker_request(headers: Mapping[str, str], settings) -> WorkerAuthorization:
    """
    Check a request's worker token.

    Args:
        headers: Request headers (case-insensitive mapping, e.g. starlette Headers)
        settings: Settings carrying WORKER_TOKEN / CRON_SECRET

    Returns:
        WorkerAuthorization with the accepted method, or the rejection reason
    """
    tokens = configured_worker_tokens(settings)
    if not tokens:
        return WorkerAuthorization(
            ok=False,
            error="Worker authorization is not configured. Set WORKER_TOKEN or CRON_SECRET.",
        )

    header_token = _normalize(headers.get(WORKER_TOKEN_HEADER))
    bearer_token = parse_bearer_token(headers.get("authorization"))

    if not header_token and not bearer_token:
        return WorkerAuthorization(
            ok=False,
            error=f"Missing worker token. Provide {WORKER_TOKEN_HEADER} or Authorization: Bearer <token>.",
        )

    if _matches(header_token, tokens):
        return WorkerAuthorization(ok=True, method="header-token")

    if _matches(bearer_token, tokens):
        return WorkerAuthorization(ok=True, method="bearer-token")

    return WorkerAuthorization(ok=False, error="Invalid worker token.")
