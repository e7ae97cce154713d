"""Configuration models for the sync engine and its components."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator


class ReconnectConfig(BaseModel):
    """Exponential back-off settings for the push channel."""

    initial_delay_ms: int = Field(
        default=1_000,
        ge=1,
        description="Delay before the first reconnect attempt after a failure.",
    )

    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Factor applied to the delay after every scheduled reconnect.",
    )

    max_delay_ms: int = Field(
        default=30_000,
        ge=1,
        description="Upper bound for the reconnect delay.",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> ReconnectConfig:
        if self.initial_delay_ms > self.max_delay_ms:
            raise ValueError("initial_delay_ms must not exceed max_delay_ms")
        return self


class StatusConfig(BaseModel):
    """Settings for the session status projector."""

    retry_countdown_ms: int = Field(
        default=5_000,
        ge=0,
        description=(
            "Countdown used for a retry part that carries no ``next`` timestamp of its own. "
            "A local heuristic, not a value reported by the agent server."
        ),
    )


class TransportConfig(BaseModel):
    """Settings for the HTTP event-stream transport."""

    event_path: str = "/event"
    """Path appended to the remote endpoint to form the push URL."""

    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds to wait for the push channel to open.",
    )

    headers: dict[str, str] = Field(default_factory=dict)
    """Extra request headers sent when opening the channel."""


class SyncConfig(BaseModel):
    """
    Top-level configuration for a :class:`~agentsync.engine.SyncEngine`.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = SyncConfig(
            reconnect=ReconnectConfig(initial_delay_ms=500, max_delay_ms=10_000),
            status=StatusConfig(retry_countdown_ms=3_000),
        )
    """

    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    status: StatusConfig = Field(default_factory=StatusConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)

    optimistic_prefix: str = Field(
        default="optimistic_",
        min_length=1,
        description="ID prefix reserved for locally synthesized placeholder messages.",
    )

    @classmethod
    def default(cls) -> SyncConfig:
        """Return a config instance with all defaults."""
        return cls()
