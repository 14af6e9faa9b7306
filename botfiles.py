#!/usr/bin/env python3
import json
import os
import shutil
import botutils as utils

# Common folders, created at startup by makeFolders
dataFolder = "data/"
logFolder = f"{dataFolder}logs/"
reportsFolder = f"{dataFolder}reports/"

def makeFolders():
    utils.makeFolderIfNotExists(dataFolder)
    utils.makeFolderIfNotExists(logFolder)
    utils.makeFolderIfNotExists(reportsFolder)

def loadJsonFile(filename, default=None):
    if filename is None: return default
    if not os.path.exists(filename): return default
    with open(filename) as f:
        return(json.load(f))

def saveTextFile(filename, data, mode=None):
    utils.makeFolderIfNotExists(os.path.dirname(filename))
    tempfile = f"{filename}.tmp"
    with open(tempfile, "w") as f:
        f.write(data)
    if mode is not None: os.chmod(tempfile, mode)
    shutil.move(tempfile, filename)

def saveIfFileContentDifferent(filename, data):
    different = False
    if not os.path.exists(filename):
        different = True
    else:
        with open(filename) as f:
            fileContent = f.read()
        different = fileContent != data
    if different:
        with open(filename, "w") as f:
            f.write(data)
    return different

def getConfigFilename(filename):
    c = utils.getCommandArg("config") # allow overriding default filename
    if c is not None: filename = c
    return filename

def getConfig(filename, logger):
    logger.debug(f"Loading config from {filename}")
    if not os.path.exists(filename):
        logger.warning(f"Config file does not exist at {filename}")
        return {}
    return loadJsonFile(filename)
