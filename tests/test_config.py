import json

from smart_vitals.config import DEFAULT_SCOPES, SmartSettings, load_settings, save_configuration


def test_defaults_when_nothing_configured():
    s = load_settings()
    assert s == SmartSettings()
    assert s.scopes == DEFAULT_SCOPES
    assert s.missing_client_identity() == ["client_id", "redirect_uri"]


def test_config_file_then_environment(datadir):
    (datadir / "config.json").write_text(json.dumps({
        "client_id": "from-file",
        "redirect_uri": "https://app.example/callback",
        "request_timeout": 12,
        "unrelated": "ignored",
    }))
    s = load_settings(environ={"SMART_CLIENT_ID": "from-env", "SMART_ALLOW_UNKNOWN_CODES": "yes"})
    assert s.client_id == "from-env"
    assert s.redirect_uri == "https://app.example/callback"
    assert s.request_timeout == 12.0
    assert s.allow_unknown_codes is True
    assert s.missing_client_identity() == []


def test_blank_environment_values_do_not_override(datadir):
    (datadir / "config.json").write_text(json.dumps({"client_id": "from-file"}))
    assert load_settings(environ={"SMART_CLIENT_ID": "  "}).client_id == "from-file"


def test_malformed_file_falls_back_to_defaults(datadir):
    (datadir / "config.json").write_text("{oops")
    assert load_settings(environ={}) == SmartSettings()


def test_bad_timeout_is_ignored(datadir):
    (datadir / "config.json").write_text(json.dumps({"request_timeout": "soon"}))
    assert load_settings(environ={}).request_timeout == 30.0


def test_save_configuration_merges_known_keys(datadir):
    save_configuration({"client_id": "abc"})
    save_configuration({"redirect_uri": "https://app.example/callback", "secret": "nope"})
    stored = json.loads((datadir / "config.json").read_text())
    assert stored == {"client_id": "abc", "redirect_uri": "https://app.example/callback"}
    s = load_settings(environ={})
    assert (s.client_id, s.redirect_uri) == ("abc", "https://app.example/callback")
