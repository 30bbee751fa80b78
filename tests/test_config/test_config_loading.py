from pathlib import Path

import pytest

import converse_agent.config as config_module
from converse_agent.config import Config
from converse_agent.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model_id: home-model\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model_id: us.anthropic.claude-sonnet-4-20250514-v1:0\n"
            "  max_tokens: 1024\n"
            "  top_p: 0.9\n"
            "orchestrator:\n"
            "  max_tool_depth: 10\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model_id == "us.anthropic.claude-sonnet-4-20250514-v1:0"
    assert cfg.orchestrator.max_tool_depth == 10
    assert cfg.orchestrator.protocol_retries == 1
    assert cfg.model.inference_config() == {"maxTokens": 1024, "temperature": 0.5, "topP": 0.9}


def test_load_falls_back_to_home_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    home_cfg = tmp_path / "home" / "config.yaml"
    home_cfg.parent.mkdir()
    home_cfg.write_text("context:\n  context_length: 8000\n  prompt_cache: false\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.context.context_length == 8000
    assert cfg.context.prompt_cache is False


def test_defaults_without_any_config_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.orchestrator.max_tool_depth == 25
    assert cfg.guardrail.enabled is False
    assert cfg.session.enable_history is True
    assert cfg.model.inference_config() == {"maxTokens": 4096, "temperature": 0.5}


def test_env_vars_fill_unset_sections(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("CONVERSE_TRANSPORT__ENDPOINT", "http://models.internal/stream")
    monkeypatch.setenv("CONVERSE_ORCHESTRATOR__MAX_TOOL_DEPTH", "7")

    cfg = Config.load()

    assert cfg.transport.endpoint == "http://models.internal/stream"
    assert cfg.orchestrator.max_tool_depth == 7


def test_pricing_overrides_and_guardrail_patterns_from_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text(
        (
            "pricing:\n"
            "  overrides:\n"
            "    - match: my-model\n"
            "      input: 0.001\n"
            "      output: 0.002\n"
            "guardrail:\n"
            "  enabled: true\n"
            "  output_patterns:\n"
            "    - 'api[_-]?key'\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.pricing.overrides[0].match == "my-model"
    assert cfg.pricing.overrides[0].cache_read == 0.0
    assert cfg.guardrail.output_patterns == ["api[_-]?key"]


def test_save_writes_yaml_that_loads_back(tmp_path: Path):
    cfg = Config()
    cfg.model.system_prompt = "Be concise."
    target = tmp_path / "out" / "config.yaml"

    cfg.save(target)

    assert Config.from_yaml(target).model.system_prompt == "Be concise."


def test_malformed_yaml_raises_configuration_error(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("model: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        Config.from_yaml(path)


def test_invalid_values_raise_configuration_error(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("orchestrator:\n  max_tool_depth: lots\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        Config.from_yaml(path)


def test_non_mapping_config_raises_configuration_error(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="must contain a mapping"):
        Config.from_yaml(path)


def test_thinking_section_builds_request_fields(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "model:\n  thinking:\n    type: enabled\n    budget_tokens: 1024\n    interleaved: true\n",
        encoding="utf-8",
    )

    cfg = Config.from_yaml(path)

    assert cfg.model.thinking.request_fields() == {"type": "enabled", "budget_tokens": 1024}
    assert cfg.model.thinking.interleaved is True
    assert Config().model.thinking.request_fields() is None
