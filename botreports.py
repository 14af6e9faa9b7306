#!/usr/bin/env python3
import boto3
import boto3.session
import datetime
import html
import botfiles as files
import botutils as utils

def isAWSEnabled(reportsConfig):
    if "aws" not in reportsConfig: return False
    if not all(k in reportsConfig["aws"] for k in (
        "enabled",
        "s3Bucket",
        "aws_access_key_id",
        "aws_secret_access_key",
        "baseKey")):
        return False
    if not reportsConfig["aws"]["enabled"]: return False
    return True

def uploadToAWS(ctx, s3Key, filename):
    reportsConfig = ctx.config.get("reports", {})
    if not isAWSEnabled(reportsConfig):
        ctx.logger.debug(f"File {filename} not uploaded. AWS not enabled")
        return None
    awsConfig = reportsConfig["aws"]
    s3Bucket = awsConfig["s3Bucket"]
    s3Key = f"{awsConfig['baseKey']}{s3Key}"
    url = f"https://{s3Bucket}.s3.amazonaws.com/{s3Key}"
    mysession = boto3.session.Session(
        aws_access_key_id=awsConfig["aws_access_key_id"],
        aws_secret_access_key=awsConfig["aws_secret_access_key"])
    s3Client = mysession.client('s3')
    s3Client.upload_file(
        Filename=filename,
        Bucket=s3Bucket,
        Key=s3Key,
        ExtraArgs={'ContentType':"text/html", "CacheControl": "public,max-age=3600"}
        )
    ctx.logger.debug(f"Updated {url}")
    return url

def formatTime(secTime):
    return datetime.datetime.fromtimestamp(int(secTime), datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

def makeStatsText(stats, dailyLimit, recentSettlements):
    lines = []
    lines.append("=== Nostr Zap Bot Statistics ===")
    lines.append("")
    lines.append(f"Total Events Zapped: {stats.totalZapped}")
    lines.append(f"Total Sats Spent (all time): {stats.totalSats}")
    lines.append(f"Unique Authors Zapped: {stats.uniqueAuthors}")
    lines.append("")
    lines.append(f"Today's Total: {stats.todayTotal} sats")
    lines.append(f"Daily Limit: {dailyLimit} sats")
    lines.append(f"Remaining Today: {dailyLimit - stats.todayTotal} sats")
    lines.append("")
    if len(recentSettlements) > 0:
        lines.append("Recent Zaps:")
        for i, entry in enumerate(recentSettlements):
            lines.append(f"  {i+1}. {entry.authorId[:16]}... - {entry.amountSats} sats ({formatTime(entry.settledAt)})")
    else:
        lines.append("No zaps recorded yet.")
    lines.append("")
    lines.append("================================")
    return "\n".join(lines)

def buildLedgerReportHeader(npub, stats):
    output = ""
    output += "<html>"
    output += "<head><style>\n"
    output += "body {font-family:DejaVuSansMono,Consolas,Monospace,Lucida Console;font-size:12pt;}\n"
    output += "table {width:100%;border-collapse:collapse;}\n"
    output += "thead {background-color:#440044;color:#ffffff;font-weight:700;font-size:12pt;}\n"
    output += "tbody {background-color:#880088;color:#ffffff;font-size:10pt;}\n"
    output += "tr.d {border-bottom: 2px solid #610061;}\n"
    output += "td {font-size:8pt;}\n"
    output += "</style></head>"
    output += "<body>"
    output += f"<h3>Zap ledger for {html.escape(npub)}</h3>"
    output += f"<p>{stats.totalZapped} events zapped for {stats.totalSats} sats across {stats.uniqueAuthors} authors. Today: {stats.todayTotal} sats</p>"
    output += "<table>"
    output += "<thead><tr>"
    output += "<td width=150>Zapped</td>"
    output += "<td>Event</td>"
    output += "<td>Author</td>"
    output += "<td width=150>Posted</td>"
    output += "<td width=90 align=center>Amount</td>"
    output += "</tr></thead>"
    output += "<tbody>"
    return output

def buildLedgerReportLines(entries):
    output = ""
    for entry in entries:
        npub = utils.normalizeToBech32(entry.authorId, "npub") or entry.authorId
        output += "<tr class=\"d\">"
        output += f"<td>{formatTime(entry.settledAt)}</td>"
        output += f"<td>{html.escape(entry.eventId)}</td>"
        output += f"<td>{html.escape(npub)}</td>"
        output += f"<td>{formatTime(entry.eventCreatedAt)}</td>"
        output += f"<td align=right>{entry.amountSats} sat</td>"
        output += "</tr>"
    return output

def buildLedgerReportFooter():
    output = ""
    output += "</tbody>"
    output += "</table>"
    output += "</body></html>"
    return output

def getLedgerReportFilename():
    utils.makeFolderIfNotExists(files.reportsFolder)
    return f"{files.reportsFolder}ledger.html"

def makeLedgerReport(ctx, ledger, limit=500):
    destFile = getLedgerReportFilename()
    ctx.logger.debug(f"Making ledger report at {destFile}")
    destData = \
        buildLedgerReportHeader(ctx.config["author"]["npub"], ledger.getStats()) + \
        buildLedgerReportLines(ledger.getRecentSettlements(limit)) + \
        buildLedgerReportFooter()
    fileChanged = files.saveIfFileContentDifferent(destFile, destData)
    if fileChanged:
        uploadToAWS(ctx, "ledger.html", destFile)
    return fileChanged
