"""Runtime configuration and logging setup.

Nothing here is read implicitly: callers build a :class:`RuntimeConfig`
(directly or with :meth:`RuntimeConfig.from_env`) and thread it through the
objects they construct.
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field

LOG_FORMAT = '%(asctime)s:%(name)s:%(levelname)s:%(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

ENV_PREFIX = "FANOUT_"

DEFAULT_SYSTEM_PROMPT = (
    "You are a capable assistant. Use the available tools when they help "
    "you complete the task, then answer concisely."
)


class TurnConfig(BaseModel):
    """Per-turn settings passed to :class:`~fanout.turn.ConversationTurn`.

    Args:
        system_prompt: Injected at call time, never stored in history.
        language: Language the model should answer in, if any.
        max_turns: Maximum backend round trips for one turn loop.
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    language: str | None = None
    max_turns: int = Field(default=50, ge=1)

    def render_system_prompt(self) -> str:
        if not self.language:
            return self.system_prompt
        return f"{self.system_prompt}\n\nAlways respond in {self.language}."


class RuntimeConfig(BaseModel):
    model: str = "qwen-plus"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    language: str | None = None
    max_turns: int = Field(default=50, ge=1)
    default_task_timeout: float = Field(default=60.0, gt=0)
    max_concurrent_agents: int = Field(default=3, ge=1)
    max_delegation_depth: int = Field(default=2, ge=0)
    poll_interval: float = Field(default=2.0, gt=0)
    poll_timeout: float = Field(default=300.0, gt=0)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, prefix: str = ENV_PREFIX) -> RuntimeConfig:
        """Build a config from ``FANOUT_*`` environment variables.

        Unset variables keep their defaults; values are validated by
        pydantic.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"{prefix}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)

    def turn_config(self) -> TurnConfig:
        return TurnConfig(
            system_prompt=self.system_prompt,
            language=self.language,
            max_turns=self.max_turns,
        )


def configure_logging(
    level: int | str = logging.INFO,
    log_file: str | None = None,
) -> None:
    """Send fanout logs to stderr and optionally to *log_file*."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
    )
