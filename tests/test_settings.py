import pytest

from scanflow.core import settings


def test_env_getters_fall_back_on_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FEWSHOT_MAX_DYNAMIC", "many")
    monkeypatch.setenv("TEXT_STAGE_TIMEOUT", "0")
    monkeypatch.setenv("PREFER_PAST_DATES", "maybe")

    assert settings.fewshot_max_dynamic() == settings.DEFAULT_FEWSHOT_MAX_DYNAMIC
    assert settings.text_stage_timeout() == settings.DEFAULT_TEXT_STAGE_TIMEOUT
    assert settings.prefer_past_dates() is False


def test_env_getters_read_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FEWSHOT_MAX_DYNAMIC", "3")
    monkeypatch.setenv("CONFIDENCE_THRESHOLD", "0.75")
    monkeypatch.setenv("PROMOTE_UNKNOWN_KIND_CHANGE", "off")

    assert settings.fewshot_max_dynamic() == 3
    assert settings.confidence_threshold() == 0.75
    assert settings.promote_unknown_kind_change() is False


def test_mask_env_value() -> None:
    assert settings.mask_env_value("OPENAI_API_KEY", "sk-abcdef") == "sk...ef"
    assert settings.mask_env_value("STORE_TOKEN", "abc") == "****"
    assert settings.mask_env_value("OPENAI_MODEL", "gpt-4o-mini") == "gpt-4o-mini"


def test_read_config_file(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "# comment\nOPENAI_MODEL: \"gpt-4o\"\nTEXT_STAGE_TIMEOUT: 12 # seconds\nPREFER_PAST_DATES: yes\nEMPTY:\n",
        encoding="utf-8",
    )

    values = settings.read_config_file(str(path))

    assert values == {"OPENAI_MODEL": "gpt-4o", "TEXT_STAGE_TIMEOUT": "12", "PREFER_PAST_DATES": "True"}
    assert settings.read_config_file(str(tmp_path / "missing.yaml")) == {}


def test_unreadable_config_file_is_ignored(tmp_path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("OPENAI_MODEL: [gpt-4o\n", encoding="utf-8")
    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just text\n", encoding="utf-8")

    assert settings.read_config_file(str(broken)) == {}
    assert settings.read_config_file(str(scalar)) == {}
