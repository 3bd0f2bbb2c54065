from pathlib import Path

import switchback.config as config_module
from switchback.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("backends:\n  preferred: ollama\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "backends:\n"
            "  preferred: lmstudio\n"
            "  lmstudio:\n"
            "    model: gpt-oss-20b\n"
            "  openai:\n"
            "    models:\n"
            "      - gpt-4o-mini\n"
            "      - gpt-4.1\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.backends.preferred == "lmstudio"
    assert cfg.backends.lmstudio.model == "gpt-oss-20b"
    assert cfg.backends.openai.models == ["gpt-4o-mini", "gpt-4.1"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "agent:\n"
            "  max_iterations: 4\n"
            "  app_name: Helper\n"
            "budget:\n"
            "  total_context_window: 8192\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.agent.max_iterations == 4
    assert cfg.agent.app_name == "Helper"
    assert cfg.budget.to_budget().max_history_tokens == 8192 - 300 - 1500


def test_defaults_when_no_config_file(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 10
    assert cfg.agent.auto_approve is False
    assert cfg.budget.to_budget().max_history_tokens == 2296
    assert cfg.backends.retry.retryable_status_codes == [429, 503, 529]
    assert cfg.backends.retry.max_retries == 3
    assert cfg.backends.ollama.base_url == "http://127.0.0.1:11434"
    assert cfg.backends.local_llama.gpu_layers == -1
    assert cfg.logging.level == "WARNING"


def test_environment_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("SWITCHBACK_AGENT__MAX_ITERATIONS", "5")
    monkeypatch.setenv("SWITCHBACK_BACKENDS__PREFERRED", "anthropic")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 5
    assert cfg.backends.preferred == "anthropic"


def test_cloud_keys_fall_back_to_conventional_env_vars(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", " from-env ")
    cfg = Config()

    assert cfg.backends.anthropic.resolved_api_key("ANTHROPIC_API_KEY") == "from-env"

    cfg.backends.anthropic.api_key = "from-config"
    assert cfg.backends.anthropic.resolved_api_key("ANTHROPIC_API_KEY") == "from-config"


def test_save_then_load_round_trips(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "nested" / "config.yaml"
    cfg = Config()
    cfg.backends.preferred = "local-llama"
    cfg.backends.local_llama.model_path = "/models/tiny.gguf"
    cfg.agent.auto_approve = True

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.backends.preferred == "local-llama"
    assert loaded.backends.local_llama.model_path == "/models/tiny.gguf"
    assert loaded.agent.auto_approve is True


def test_get_and_set_config_accessor():
    custom = Config()
    custom.agent.app_name = "Custom"

    config_module.set_config(custom)
    try:
        assert config_module.get_config() is custom
    finally:
        config_module.set_config(None)
