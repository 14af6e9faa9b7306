#!/usr/bin/env python3
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from urllib.parse import urlparse, parse_qs
import copy
import logging
import sys
import threading
import time
import botfiles as files
import botutils as utils
from boterrors import ConfigError

defaultConfig = {
    "author": {"npub": "", "bunkerUrl": ""},
    "relays": [],
    "selectedList": "",
    "monitored": [],
    "nwcUrl": "",
    "zap": {"amount": 21, "comment": ""},
    "reaction": {"enabled": False, "content": "+", "emojiName": "", "emojiUrl": ""},
    "budget": {"dailyLimit": 1000, "perNpubLimit": 0},
    "database": {"path": f"{files.dataFolder}zaps.db"},
    "signer": {"keyFile": f"{files.dataFolder}signer.key", "keepaliveHours": 4, "callTimeout": 15},
    "lnurl": {"connectTimeout": 5, "readTimeout": 30, "denyProviders": []},
    "maxWorkers": 8,
    "relayReconnectMinutes": 30,
    "reports": {"aws": {"enabled": False}},
}

@dataclass
class BotContext:
    config: dict
    logger: logging.Logger
    shutdown: threading.Event = field(default_factory=threading.Event)

    def deadline(self, seconds=None):
        return utils.Deadline(self.shutdown, seconds)

def setupLogger(name="notezapper", logFile=None):
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(fmt="%(asctime)s %(name)s.%(levelname)s: %(message)s", datefmt="%Y.%m.%d %H:%M:%S")
    logging.Formatter.converter = time.gmtime
    stdoutLoggingHandler = logging.StreamHandler(stream=sys.stdout)
    stdoutLoggingHandler.setFormatter(formatter)
    logger.addHandler(stdoutLoggingHandler)
    if logFile is not None:
        fileLoggingHandler = RotatingFileHandler(logFile, mode='a', maxBytes=10*1024*1024,
                                     backupCount=21, encoding=None, delay=0)
        fileLoggingHandler.setFormatter(formatter)
        logger.addHandler(fileLoggingHandler)
    return logger

def mergeConfig(config, defaults):
    merged = copy.deepcopy(defaults)
    for k, v in (config or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = mergeConfig(v, merged[k])
        else:
            merged[k] = v
    return merged

def applyDefaults(config):
    merged = mergeConfig(config, defaultConfig)
    if merged["budget"].get("perNpubLimit", 0) in (0, None):
        merged["budget"]["perNpubLimit"] = merged["budget"]["dailyLimit"]
    return merged

def validateConfig(config):
    author = config["author"]
    if not author.get("npub"):
        raise ConfigError("author.npub is required")
    if utils.normalizeToHex(author["npub"]) is None:
        raise ConfigError(f"author.npub is not a valid npub: {author['npub']}")
    bunkerUrl = author.get("bunkerUrl", "")
    if not bunkerUrl:
        raise ConfigError("author.bunkerUrl is required")
    if not isValidBunkerUrl(bunkerUrl):
        raise ConfigError("author.bunkerUrl is not a valid bunker:// url")
    if len(config["relays"]) == 0:
        raise ConfigError("at least one relay is required")
    if not config.get("nwcUrl"):
        raise ConfigError("nwcUrl is required")
    if not isinstance(config["zap"].get("amount"), int) or config["zap"]["amount"] <= 0:
        raise ConfigError("zap.amount must be a positive number of sats")
    reaction = config["reaction"]
    if reaction.get("enabled"):
        if not reaction.get("content"):
            raise ConfigError("reaction.content is required when reactions are enabled")
        if bool(reaction.get("emojiName")) != bool(reaction.get("emojiUrl")):
            raise ConfigError("both reaction.emojiName and reaction.emojiUrl must be provided together")
    budget = config["budget"]
    if budget.get("dailyLimit", 0) <= 0:
        raise ConfigError("budget.dailyLimit must be positive")
    if budget.get("perNpubLimit", 0) <= 0:
        raise ConfigError("budget.perNpubLimit must be positive")
    if not config["database"].get("path"):
        raise ConfigError("database.path is required")
    if not config.get("selectedList") and len(config.get("monitored", [])) == 0:
        raise ConfigError("either selectedList or monitored must name who to zap")
    return config

def isValidBunkerUrl(bunkerUrl):
    u = urlparse(bunkerUrl)
    if u.scheme != "bunker": return False
    if not utils.isHex(u.netloc) or len(u.netloc) != 64: return False
    return len(parse_qs(u.query).get("relay", [])) > 0

def loadConfig(filename, logger):
    config = files.getConfig(filename, logger)
    if len(config.keys()) == 0: return {}
    return validateConfig(applyDefaults(config))

def describeConfig(config, logger):
    logger.info(f"Author: {config['author']['npub']}")
    if config.get("selectedList"): logger.info(f"Selected list: {config['selectedList']}")
    for i, relay in enumerate(config["relays"]):
        logger.info(f"Relay {i+1}: {relay}")
    logger.info(f"Zap amount: {config['zap']['amount']} sats")
    logger.info(f"Daily budget limit: {config['budget']['dailyLimit']} sats")
    logger.info(f"Per-npub limit: {config['budget']['perNpubLimit']} sats")
    logger.info(f"Wallet: {maskUrl(config['nwcUrl'])}")
    logger.info(f"Database path: {config['database']['path']}")

def maskUrl(url):
    if len(url) <= 30: return "***"
    return url[:15] + "..." + url[-8:]
