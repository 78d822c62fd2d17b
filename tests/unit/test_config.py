import logging

import pytest
from pydantic import ValidationError

from fanout.config import LOG_FORMAT, RuntimeConfig, TurnConfig, configure_logging


class TestTurnConfig:
    def test_prompt_without_language(self):
        assert TurnConfig(system_prompt="Be brief.").render_system_prompt() == "Be brief."

    def test_language_appended(self):
        config = TurnConfig(system_prompt="Be brief.", language="Chinese")
        assert config.render_system_prompt() == "Be brief.\n\nAlways respond in Chinese."

    def test_max_turns_must_be_positive(self):
        with pytest.raises(ValidationError):
            TurnConfig(max_turns=0)


class TestRuntimeConfig:
    def test_defaults(self):
        config = RuntimeConfig()
        assert config.default_task_timeout == 60.0
        assert config.max_concurrent_agents == 3
        assert config.poll_interval == 2.0
        assert config.poll_timeout == 300.0

    def test_from_env(self):
        config = RuntimeConfig.from_env({
            "FANOUT_MODEL": "qwen-max",
            "FANOUT_LANGUAGE": "German",
            "FANOUT_MAX_CONCURRENT_AGENTS": "5",
            "FANOUT_DEFAULT_TASK_TIMEOUT": "12.5",
            "FANOUT_POLL_INTERVAL": "",
            "UNRELATED": "x",
        })
        assert config.model == "qwen-max"
        assert config.max_concurrent_agents == 5
        assert config.default_task_timeout == 12.5
        assert config.poll_interval == 2.0

    def test_from_env_validates(self):
        with pytest.raises(ValidationError):
            RuntimeConfig.from_env({"FANOUT_MAX_CONCURRENT_AGENTS": "0"})

    def test_custom_prefix(self):
        assert RuntimeConfig.from_env({"APP_MAX_TURNS": "7"}, prefix="APP_").max_turns == 7

    def test_turn_config(self):
        turn = RuntimeConfig(system_prompt="S", language="French", max_turns=4).turn_config()
        assert turn == TurnConfig(system_prompt="S", language="French", max_turns=4)


def test_configure_logging_installs_format(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    root.handlers.clear()
    try:
        log_file = tmp_path / "fanout.log"
        configure_logging(logging.DEBUG, log_file=str(log_file))
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 2
        assert all(h.formatter._fmt == LOG_FORMAT for h in root.handlers)

        logging.getLogger("fanout.test").info("hello")
        for handler in root.handlers:
            handler.flush()
        assert "fanout.test:INFO:hello" in log_file.read_text()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
