#!/usr/bin/env python3
import sys
import botconfig as cfg
import botfiles as files
import botreports as reports
from botledger import Ledger
from boterrors import ConfigError

if __name__ == '__main__':

    logger = cfg.setupLogger("zapstats")
    configFilename = files.getConfigFilename(f"{files.dataFolder}config.json")
    try:
        config = cfg.loadConfig(configFilename, logger)
    except ConfigError as err:
        logger.error(f"Invalid configuration in {configFilename}: {str(err)}")
        sys.exit(1)
    if len(config.keys()) == 0:
        logger.error(f"No configuration found at {configFilename}. Run bot.py first to create one")
        sys.exit(1)

    ledger = Ledger(config["database"]["path"])
    print(reports.makeStatsText(ledger.getStats(), config["budget"]["dailyLimit"], ledger.getRecentSettlements(5)))

    if "--report" in sys.argv:
        ctx = cfg.BotContext(config, logger)
        files.makeFolders()
        if reports.makeLedgerReport(ctx, ledger):
            print(f"Ledger report written to {reports.getLedgerReportFilename()}")
        else:
            print("Ledger report unchanged")
