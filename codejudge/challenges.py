"""Challenge stores: where the test cases for a challenge come from."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

import httpx

from codejudge.errors import ChallengeNotFoundError, ChallengeStoreError, ConfigError
from codejudge.models import Challenge

logger = logging.getLogger(__name__)


@runtime_checkable
class ChallengeStore(Protocol):
    def get(self, challenge_id: str) -> Challenge:
        """Return the challenge or raise :class:`ChallengeNotFoundError`."""
        ...


class InMemoryChallengeStore:
    def __init__(self, challenges: Iterable[Challenge] = ()) -> None:
        self._challenges: dict[str, Challenge] = {c.id: c for c in challenges}

    def add(self, challenge: Challenge) -> None:
        self._challenges[challenge.id] = challenge

    def get(self, challenge_id: str) -> Challenge:
        try:
            return self._challenges[str(challenge_id)]
        except KeyError:
            raise ChallengeNotFoundError(challenge_id) from None

    def __len__(self) -> int:
        return len(self._challenges)


class JsonChallengeStore(InMemoryChallengeStore):
    """Loads challenges from a JSON file: a list, or ``{"challenges": [...]}``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read challenges file {self.path}: {e}") from e
        if isinstance(data, dict):
            data = data.get("challenges", [])
        try:
            challenges = [Challenge.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Malformed challenge in {self.path}: {e}") from e
        super().__init__(challenges)
        logger.info("Loaded %d challenges from %s", len(challenges), self.path)


class HttpChallengeStore:
    """Fetches challenges from the platform API (``GET {base}/api/challenges/{id}``)."""

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers: dict[str, str] = {"Accept": "application/json"}
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"
        self._client = client or httpx.Client(timeout=timeout)

    def get(self, challenge_id: str) -> Challenge:
        url = f"{self.base_url}/api/challenges/{challenge_id}"
        try:
            resp = self._client.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            raise ChallengeStoreError(f"Challenge store request failed: {e}") from e
        if resp.status_code == 404:
            raise ChallengeNotFoundError(challenge_id)
        if resp.status_code >= 400:
            raise ChallengeStoreError(
                f"Challenge store returned {resp.status_code} for challenge {challenge_id}"
            )
        try:
            data = resp.json()
            # Some APIs wrap the object: {"challenge": {...}}
            if isinstance(data, dict) and isinstance(data.get("challenge"), dict):
                data = data["challenge"]
            data.setdefault("id", challenge_id)
            return Challenge.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ChallengeStoreError(f"Malformed challenge {challenge_id}: {e}") from e

    def close(self) -> None:
        self._client.close()
