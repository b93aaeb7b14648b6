"""
Team key store: shared provider keys configured by a team owner.

A user resolves to the team they own first, then to a team they are a
member of.  A team without a configured key yields no TeamKey, so its
members fall through to the credits tier.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field, SecretStr

from studyrag.schemas import Provider
from studyrag.utils.helpers import load_json, save_json


class TeamKey(BaseModel):
    api_key: SecretStr
    team_name: str
    provider: Provider = Provider.OPENAI


class Team(BaseModel):
    name: str
    owner_id: str
    api_key: Optional[SecretStr] = None
    provider: Provider = Provider.OPENAI
    members: list[str] = Field(default_factory=list)


def validate_api_key_format(api_key: str, provider: Provider) -> bool:
    """Cheap shape check before a key is stored: sk-ant-... for Anthropic, sk-... for OpenAI."""
    key = api_key.strip()
    if provider == Provider.ANTHROPIC:
        return key.startswith("sk-ant-")
    return key.startswith("sk-") and not key.startswith("sk-ant-")


class TeamKeyStore(ABC):
    @abstractmethod
    def get_team_key(self, user_id: str) -> Optional[TeamKey]:
        ...


class InMemoryTeamKeyStore(TeamKeyStore):
    """Teams held in memory, optionally loaded from / saved to JSON."""

    def __init__(self, teams: Optional[list[Team]] = None, path: Optional[str | Path] = None) -> None:
        self._teams: dict[str, Team] = {t.name: t for t in (teams or [])}
        self.path = Path(path) if path else None

    def get_team_key(self, user_id: str) -> Optional[TeamKey]:
        team = self.team_for(user_id)
        if team is None or team.api_key is None:
            return None
        return TeamKey(api_key=team.api_key, team_name=team.name, provider=team.provider)

    def team_for(self, user_id: str) -> Optional[Team]:
        for team in self._teams.values():
            if team.owner_id == user_id:
                return team
        for team in self._teams.values():
            if user_id in team.members:
                return team
        return None

    def set_team(self, team: Team) -> None:
        if team.api_key is not None and not validate_api_key_format(
            team.api_key.get_secret_value(), team.provider
        ):
            raise ValueError(f"API key for team {team.name!r} does not look like a {team.provider.value} key")
        self._teams[team.name] = team
        logger.info(f"[TeamKeyStore] Team {team.name!r} saved ({len(team.members)} member(s))")

    def save(self, path: Optional[str | Path] = None) -> None:
        target = Path(path) if path else self.path
        if target is None:
            raise ValueError("No path given and team store was not loaded from a file")
        payload = {
            "teams": [
                {
                    **t.model_dump(mode="json", exclude={"api_key"}),
                    "api_key": t.api_key.get_secret_value() if t.api_key else None,
                }
                for t in self._teams.values()
            ]
        }
        save_json(payload, target)

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryTeamKeyStore":
        path = Path(path)
        if not path.exists():
            return cls(path=path)
        data = load_json(path)
        teams = [Team(**t) for t in data.get("teams", [])]
        logger.debug(f"[TeamKeyStore] Loaded {len(teams)} team(s) from {path}")
        return cls(teams=teams, path=path)
