#!/usr/bin/env python3
from botocore.exceptions import BotoCoreError, ClientError
import shutil
import signal
import sys
import threading
import botconfig as cfg
import botfiles as files
import botlist as curatedlist
import botreports as reports
import botutils as utils
from botintake import EventIntake, resolveMonitoredIdentities
from botledger import Ledger
from botlnurl import PaymentNegotiator
from botnwc import NWCClient
from botpipeline import Orchestrator
from botreactor import ReactionPublisher
from botsigner import makeSigner
from botzapper import Zapper
from boterrors import ConfigError, ZapBotError

_balanceTimeout = 30
_reportInterval = 60 * 60

def handleSignal(ctx):
    def handler(signum, frame):
        ctx.logger.info(f"Received signal {signum}, shutting down")
        ctx.shutdown.set()
    return handler

def makeReport(ctx, ledger):
    try:
        reports.makeLedgerReport(ctx, ledger)
    except (OSError, BotoCoreError, ClientError) as err:
        ctx.logger.warning(f"Could not make ledger report: {str(err)}")

def reportLoop(ctx, ledger):
    while not ctx.shutdown.wait(_reportInterval):
        makeReport(ctx, ledger)

def getMonitored(ctx, signer, authorPubkey):
    config = ctx.config
    npubs = list(config.get("monitored", []))
    if config.get("selectedList"):
        npubs.extend(curatedlist.getMonitoredNpubs(ctx, config["relays"], authorPubkey, signer, config["selectedList"]))
    monitored = resolveMonitoredIdentities(npubs)
    ctx.logger.info("Monitoring these npubs:")
    for i, pubkey in enumerate(monitored):
        ctx.logger.info(f"  {i+1}. {utils.hexToBech32(pubkey, 'npub')}")
    return monitored

def logWalletBalance(ctx, wallet):
    try:
        balance = wallet.getBalance(ctx.deadline(_balanceTimeout))
        ctx.logger.info(f"Wallet balance: {balance.balanceMillisats // 1000} sats")
    except ZapBotError as err:
        ctx.logger.warning(f"Could not fetch wallet balance: {str(err)}")

def run(ctx):
    config = ctx.config
    relays = config["relays"]
    ledger = Ledger(config["database"]["path"])
    makeReport(ctx, ledger)
    signer = makeSigner(ctx).start()
    wallet = None
    reactor = None
    orchestrator = None
    try:
        authorPubkey = utils.normalizeToHex(config["author"]["npub"])
        monitored = getMonitored(ctx, signer, authorPubkey)
        wallet = NWCClient(ctx, config["nwcUrl"]).connect()
        logWalletBalance(ctx, wallet)
        negotiator = PaymentNegotiator(ctx, relays)
        zapper = Zapper(ctx, signer, negotiator, wallet, relays)
        reactor = ReactionPublisher(ctx, signer, relays)
        orchestrator = Orchestrator(ctx, ledger, zapper, reactor)
        threading.Thread(target=reportLoop, args=(ctx, ledger), name="reports", daemon=True).start()
        intake = EventIntake(ctx, relays, monitored)
        ctx.logger.info("Bot is running. Press Ctrl+C to stop.")
        for post in intake.posts():
            orchestrator.submit(post)
    finally:
        ctx.shutdown.set()
        if orchestrator is not None: orchestrator.drain()
        if reactor is not None: reactor.close()
        if wallet is not None: wallet.close()
        signer.close()
        makeReport(ctx, ledger)
        ctx.logger.info("Bot stopped")

if __name__ == '__main__':

    files.makeFolders()
    logger = cfg.setupLogger(logFile=f"{files.logFolder}bot.log")

    # Load config
    configFilename = files.getConfigFilename(f"{files.dataFolder}config.json")
    try:
        config = cfg.loadConfig(configFilename, logger)
    except ConfigError as err:
        logger.error(f"Invalid configuration in {configFilename}: {str(err)}")
        sys.exit(1)
    if len(config.keys()) == 0:
        shutil.copy("sample-config.json", configFilename)
        logger.info(f"Copied sample-config.json to {configFilename}")
        logger.info("You will need to modify this file to set the author, bunker url, wallet connection and who to zap")
        sys.exit(0)
    cfg.describeConfig(config, logger)

    ctx = cfg.BotContext(config, logger)
    signal.signal(signal.SIGINT, handleSignal(ctx))
    signal.signal(signal.SIGTERM, handleSignal(ctx))

    try:
        run(ctx)
    except ConfigError as err:
        logger.error(f"Startup failed: {str(err)}")
        sys.exit(1)
    except ZapBotError as err:
        logger.error(f"Bot stopped on error: {str(err)}")
        sys.exit(1)
