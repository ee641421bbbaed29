"""Team roster and saved team configurations."""

import structlog
from pydantic import ValidationError

from models.database import TEAM_CONFIGS_KEY, TEAM_ROSTER_KEY, StateStore
from models.schemas import ProcessType, TeamConfig, TeamMember

logger = structlog.get_logger(__name__)


class TeamRoster:
    """Persists the current team and named team configurations."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def load(self) -> list[TeamMember]:
        raw = await self._store.get_json(TEAM_ROSTER_KEY, default=[])
        team: list[TeamMember] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                team.append(TeamMember.model_validate(item))
            except ValidationError:
                logger.warning("roster_entry_malformed")
        return team

    async def save(self, team: list[TeamMember]) -> bool:
        saved = await self._store.set_json(TEAM_ROSTER_KEY, [m.model_dump(mode="json") for m in team])
        logger.info("roster_saved", team_size=len(team), saved=saved)
        return saved

    async def list_configs(self) -> list[TeamConfig]:
        raw = await self._store.get_json(TEAM_CONFIGS_KEY, default=[])
        configs: list[TeamConfig] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                configs.append(TeamConfig.model_validate(item))
            except ValidationError:
                logger.warning("team_config_malformed")
        return configs

    async def save_config(
        self,
        name: str,
        team: list[TeamMember],
        process_type: ProcessType = ProcessType.PARALLEL,
    ) -> TeamConfig:
        """Save a named configuration, replacing one with the same name."""
        config = TeamConfig(name=name, team=team, process_type=process_type)
        configs = [c for c in await self.list_configs() if c.name != name]
        configs.insert(0, config)
        await self._store.set_json(TEAM_CONFIGS_KEY, [c.model_dump(mode="json") for c in configs])
        logger.info("team_config_saved", name=name, team_size=len(team))
        return config

    async def delete_config(self, name: str) -> bool:
        """Delete a named configuration. Returns False if none matched."""
        configs = await self.list_configs()
        remaining = [c for c in configs if c.name != name]
        if len(remaining) == len(configs):
            return False
        await self._store.set_json(TEAM_CONFIGS_KEY, [c.model_dump(mode="json") for c in remaining])
        logger.info("team_config_deleted", name=name)
        return True
