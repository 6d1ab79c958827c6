import pytest

from nda_env import Settings, load_env_file, read_settings


def test_read_settings_defaults():
    s = read_settings({"TGTOKEN": "123:abc_DEF-9", "ADMIN_ID": "42"})
    assert s == Settings(bot_token="123:abc_DEF-9", admin_id=42)
    assert s.ban_seconds == 600
    assert s.token_looks_valid


def test_bot_token_fallback_and_overrides():
    s = read_settings({
        "BOT_TOKEN": "garbage",
        "ADMIN_ID": "42",
        "NDA_TIMEOUT_SECONDS": "90",
        "BAN_DURATION_MINUTES": "0",
        "NDA_LINK": " https://example.org/nda ",
        "LOG_LEVEL": "debug",
    })
    assert s.bot_token == "garbage"
    assert not s.token_looks_valid
    assert s.timeout_seconds == 90
    assert s.ban_seconds == 0
    assert s.nda_link == "https://example.org/nda"
    assert s.log_level == "DEBUG"


@pytest.mark.parametrize("env", [
    {"ADMIN_ID": "42"},
    {"TGTOKEN": "1:a"},
    {"TGTOKEN": "1:a", "ADMIN_ID": "boss"},
    {"TGTOKEN": "1:a", "ADMIN_ID": "42", "NDA_TIMEOUT_SECONDS": "0"},
    {"TGTOKEN": "1:a", "ADMIN_ID": "42", "BAN_DURATION_MINUTES": "-1"},
])
def test_invalid_startup_env_is_fatal(env):
    with pytest.raises(SystemExit):
        read_settings(env)


def test_load_env_file_does_not_override(tmp_path):
    path = tmp_path / "nda.env"
    path.write_text('# comment\nTGTOKEN="1:from_file"\nADMIN_ID=42\nnot a pair\n', encoding="utf-8")
    env = {"TGTOKEN": "1:from_env"}
    assert load_env_file(str(path), env) == 1
    assert env == {"TGTOKEN": "1:from_env", "ADMIN_ID": "42"}


def test_load_env_file_missing(tmp_path):
    env = {}
    assert load_env_file(str(tmp_path / "absent.env"), env) == 0
    assert env == {}
