from __future__ import annotations

"""Leaderboard submission interface and its HTTP client."""

import asyncio
import json
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, urlopen

from .proving import ProofBundle


DEFAULT_SUBMIT_TIMEOUT_SECONDS = 30.0


class SubmissionFailed(RuntimeError):
    """The leaderboard rejected a proof bundle or could not be reached."""


class LeaderboardSubmitter(Protocol):
    async def submit(self, bundle: ProofBundle, goal_id: str) -> int: ...


def validate_submit_url(url: str) -> str:
    parsed = urlsplit(url)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("submit url must use http or https scheme.")
    if parsed.username or parsed.password:
        raise ValueError("submit url must not include userinfo.")
    if not parsed.hostname:
        raise ValueError("submit url must include a host.")
    return url.rstrip("/")


def parse_score_delta(payload: Any) -> int:
    if isinstance(payload, dict):
        payload = payload.get("score_added", payload.get("scoreAdded"))
    if isinstance(payload, bool) or not isinstance(payload, int):
        raise SubmissionFailed("Leaderboard response did not include an integer score delta.")
    return payload


class HttpLeaderboardSubmitter:
    """POSTs `{goal_id, bundle}` as JSON and reads back the score delta."""

    def __init__(self, url: str, *, timeout: float = DEFAULT_SUBMIT_TIMEOUT_SECONDS) -> None:
        self.url = validate_submit_url(url)
        self.timeout = timeout

    def _post(self, body: dict[str, Any]) -> Any:
        request = Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:  # nosec B310
                return json.loads(response.read().decode("utf-8"))
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise SubmissionFailed(f"Leaderboard HTTP error {exc.code}: {detail}") from exc
        except URLError as exc:
            raise SubmissionFailed(f"Leaderboard request failed: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise SubmissionFailed("Leaderboard returned invalid JSON.") from exc

    async def submit(self, bundle: ProofBundle, goal_id: str) -> int:
        body = {"goal_id": goal_id, "bundle": bundle.to_dict()}
        payload = await asyncio.to_thread(self._post, body)
        return parse_score_delta(payload)
