import json
from pathlib import Path

import pytest
import structlog

import agent_runner.config as config_module
from agent_runner.config import Config, ConfigSource, LoggingConfig
from agent_runner.exceptions import ConfigurationError
from agent_runner.logging import configure_logging, get_logger, log_context, set_system_log_sink


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("tools:\n  max_tool_steps: 5\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "tools:\n"
            "  max_tool_steps: 12\n"
            "  mutating_prefixes:\n"
            "    - deploy_\n"
            "mcp:\n"
            "  servers:\n"
            "    - name: files\n"
            "      command: npx\n"
            "      args: [\"-y\", \"files-server\"]\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.tools.max_tool_steps == 12
    assert cfg.tools.mutating_prefixes == ["deploy_"]
    assert cfg.tools.max_attempts == 3
    assert cfg.mcp.servers[0].name == "files"
    assert cfg.mcp.servers[0].args == ["-y", "files-server"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("context:\n  recent_context_tokens: 1234\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.context.recent_context_tokens == 1234
    assert cfg.context.pruning.keep_last_assistant == 3


def test_missing_file_gives_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    cfg = Config.load(tmp_path / "nope.yaml")

    assert cfg.ipc.request_poll_ms == 150
    assert cfg.tools.compaction.max_output_chars == 3000


def test_non_mapping_yaml_raises_configuration_error(tmp_path: Path):
    path = tmp_path / "cfg.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="must contain a mapping"):
        Config.load(path)

    path.write_text("tools: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.load(path)


def test_compaction_floors_apply_through_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "cfg.yaml"
    path.write_text("tools:\n  compaction:\n    max_output_chars: 5\n", encoding="utf-8")

    cfg = Config.load(path)

    assert cfg.tools.compaction.max_output_chars == 800


def test_env_fills_unset_sections(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AGENT_RUNNER_IPC__REQUEST_TIMEOUT_MS", "4500")
    path = tmp_path / "cfg.yaml"
    path.write_text("memory:\n  max_results: 2\n", encoding="utf-8")

    cfg = Config.load(path)

    assert cfg.ipc.request_timeout_ms == 4500
    assert cfg.memory.max_results == 2


def test_save_round_trip(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = Config()
    cfg.session.root = str(tmp_path / "sessions")
    cfg.tools.max_nudges = 0
    path = tmp_path / "nested" / "config.yaml"

    cfg.save(path)
    loaded = Config.load(path)

    assert loaded.session.root == str(tmp_path / "sessions")
    assert loaded.tools.max_nudges == 0
    assert loaded.tools.idempotent_names == cfg.tools.idempotent_names


def test_config_source_reload(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "config.yaml"
    path.write_text("logging:\n  level: DEBUG\n", encoding="utf-8")

    source = ConfigSource(path)
    assert source.config.logging.level == "DEBUG"

    path.write_text("logging:\n  level: WARNING\n", encoding="utf-8")
    reloaded = source.reload()

    assert reloaded is source.config
    assert source.config.logging.level == "WARNING"


def test_configure_logging_routes_json_lines_to_sink():
    lines = []

    set_system_log_sink(lines.append)
    try:
        configure_logging(LoggingConfig(level="info", format="console"))
        logger = get_logger("test")
        logger.debug("hidden")
        with log_context(session_id="s1"):
            logger.info("Tool round finished", rounds=2)
        logger.warning("Outside context")
    finally:
        set_system_log_sink(None)
        structlog.reset_defaults()

    assert len(lines) == 2
    record = json.loads(lines[0])
    assert record["event"] == "Tool round finished"
    assert record["rounds"] == 2
    assert record["level"] == "info"
    assert record["session_id"] == "s1"
    assert "session_id" not in json.loads(lines[1])
