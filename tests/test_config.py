import json
import logging
import pathlib
import pytest
from nostr.key import PrivateKey
import botconfig as cfg
from boterrors import ConfigError

logger = logging.getLogger("notezapper.test")

def validConfig():
    npub = PrivateKey().public_key.bech32()
    return cfg.applyDefaults({
        "author": {"npub": npub, "bunkerUrl": "bunker://" + "ab" * 32 + "?relay=wss://relay.nsec.app"},
        "relays": ["wss://relay.damus.io"],
        "monitored": [npub],
        "nwcUrl": "nostr+walletconnect://" + "cd" * 32 + "?relay=wss://relay.example&secret=" + "ef" * 32,
        "zap": {"amount": 21},
        "budget": {"dailyLimit": 1000},
    })

def test_defaults_fill_missing_sections():
    config = cfg.applyDefaults({"zap": {"amount": 5}})
    assert config["zap"]["amount"] == 5
    assert config["zap"]["comment"] == ""
    assert config["maxWorkers"] == 8
    assert config["signer"]["keepaliveHours"] == 4
    assert config["lnurl"]["readTimeout"] == 30

def test_per_npub_limit_falls_back_to_daily_limit():
    config = cfg.applyDefaults({"budget": {"dailyLimit": 500}})
    assert config["budget"]["perNpubLimit"] == 500
    config = cfg.applyDefaults({"budget": {"dailyLimit": 500, "perNpubLimit": 50}})
    assert config["budget"]["perNpubLimit"] == 50

def test_defaults_are_not_shared():
    a = cfg.applyDefaults({})
    a["relays"].append("wss://mutated")
    assert cfg.applyDefaults({})["relays"] == []

def test_valid_config_passes():
    config = validConfig()
    assert cfg.validateConfig(config) is config

@pytest.mark.parametrize("mutate,fragment", [
    (lambda c: c["author"].update(npub=""), "author.npub"),
    (lambda c: c["author"].update(npub="npub1garbage"), "author.npub"),
    (lambda c: c["author"].update(bunkerUrl="https://example.com"), "bunkerUrl"),
    (lambda c: c.update(relays=[]), "relay"),
    (lambda c: c.update(nwcUrl=""), "nwcUrl"),
    (lambda c: c["zap"].update(amount=0), "zap.amount"),
    (lambda c: c["budget"].update(dailyLimit=0), "dailyLimit"),
    (lambda c: c.update(monitored=[], selectedList=""), "selectedList"),
])
def test_invalid_config_is_rejected(mutate, fragment):
    config = validConfig()
    mutate(config)
    with pytest.raises(ConfigError) as excinfo:
        cfg.validateConfig(config)
    assert fragment in str(excinfo.value)

def test_emoji_name_and_url_go_together():
    config = validConfig()
    config["reaction"] = {"enabled": True, "content": "+", "emojiName": "zap", "emojiUrl": ""}
    with pytest.raises(ConfigError):
        cfg.validateConfig(config)
    config["reaction"]["emojiUrl"] = "https://example.com/zap.png"
    cfg.validateConfig(config)

def test_bunker_url_checks():
    assert cfg.isValidBunkerUrl("bunker://" + "ab" * 32 + "?relay=wss://r.example")
    assert not cfg.isValidBunkerUrl("bunker://" + "ab" * 32)
    assert not cfg.isValidBunkerUrl("bunker://nothex?relay=wss://r.example")
    assert not cfg.isValidBunkerUrl("nostrconnect://" + "ab" * 32 + "?relay=wss://r.example")

def test_load_missing_config_returns_empty(tmp_path):
    assert cfg.loadConfig(str(tmp_path / "missing.json"), logger) == {}

def test_load_config_applies_defaults_and_validates(tmp_path):
    config = validConfig()
    del config["maxWorkers"]
    filename = tmp_path / "config.json"
    filename.write_text(json.dumps(config))
    loaded = cfg.loadConfig(str(filename), logger)
    assert loaded["maxWorkers"] == 8
    config["relays"] = []
    filename.write_text(json.dumps(config))
    with pytest.raises(ConfigError):
        cfg.loadConfig(str(filename), logger)

def test_mask_url():
    assert cfg.maskUrl("short") == "***"
    masked = cfg.maskUrl("nostr+walletconnect://" + "cd" * 32)
    assert masked.startswith("nostr+walletcon...")
    assert "cd" * 32 not in masked

def test_context_deadline_is_bound_to_shutdown():
    ctx = cfg.BotContext({}, logger)
    deadline = ctx.deadline(60)
    assert not deadline.canceled()
    ctx.shutdown.set()
    assert deadline.canceled()

def test_nested_sections_merge_with_defaults():
    config = cfg.applyDefaults({"author": {"npub": "npub1x"}, "reports": {"aws": {"s3Bucket": "zaps"}}})
    assert config["author"] == {"npub": "npub1x", "bunkerUrl": ""}
    assert config["reports"]["aws"] == {"enabled": False, "s3Bucket": "zaps"}
    assert config["budget"]["perNpubLimit"] == 1000

def test_sample_config_loads_to_validation(tmp_path):
    sample = pathlib.Path(__file__).parent.parent / "sample-config.json"
    config = json.loads(sample.read_text())
    filename = tmp_path / "config.json"
    filename.write_text(sample.read_text())
    with pytest.raises(ConfigError) as excinfo:
        cfg.loadConfig(str(filename), logger)
    assert "author.npub" in str(excinfo.value)
    config["author"]["npub"] = PrivateKey().public_key.bech32()
    config["author"]["bunkerUrl"] = "bunker://" + "ab" * 32 + "?relay=wss://relay.nsec.app"
    config["monitored"] = [config["author"]["npub"]]
    filename.write_text(json.dumps(config))
    loaded = cfg.loadConfig(str(filename), logger)
    assert loaded["budget"]["perNpubLimit"] == 100
    assert loaded["reaction"]["enabled"] is False
