from __future__ import annotations

from collections.abc import Callable

from chatbridge.schemas.health import AgentStatus, HealthSnapshot


class HealthMonitor:
    """Aggregates already-known liveness into a snapshot; never does I/O itself.

    Backend state is pushed in with ``set_agent_status``. Channels register a
    probe returning whether the adapter is up; a channel registered without a
    probe is reported as down and does not count against ``ok``.
    """

    def __init__(self, agent_url: str) -> None:
        self.agent_url = agent_url
        self.agent_healthy = False
        self.agent_version: str | None = None
        self._channels: dict[str, Callable[[], bool] | None] = {}

    def set_agent_status(self, healthy: bool, version: str | None = None) -> None:
        self.agent_healthy = healthy
        # A failed probe keeps the last known version.
        if version is not None:
            self.agent_version = version

    def register_channel(self, name: str, probe: Callable[[], bool] | None) -> None:
        self._channels[name] = probe

    def snapshot(self) -> HealthSnapshot:
        channels = {name: bool(probe and probe()) for name, probe in self._channels.items()}
        enabled_up = all(
            channels[name] for name, probe in self._channels.items() if probe is not None
        )
        return HealthSnapshot(
            ok=self.agent_healthy and enabled_up,
            opencode=AgentStatus(
                url=self.agent_url,
                healthy=self.agent_healthy,
                version=self.agent_version,
            ),
            channels=channels,
        )
