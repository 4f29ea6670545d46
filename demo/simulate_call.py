#!/usr/bin/env python3
"""
demo/simulate_call.py

Usage:
  python demo/simulate_call.py --call-id call123 --from +15550001111 --to +15550002222 --input support

Plays the carrier's side of a call against a running app: POSTs the call-initiated
webhook, then one input webhook per --input (speech text or keypad digits), printing
the TwiML returned for each step. Each input goes to the action URL of the last
prompt. Stops early once a response contains <Hangup/>.
Finishes with a `completed` status callback unless --no-status is given.

To try it against the bundled flow, start the app with
  SAMPLE_FLOW_PATH=demo/flows/customer_service.json SAMPLE_FLOW_NUMBER=+15550002222
"""
import argparse
import os
from urllib.parse import urljoin
from xml.etree import ElementTree

import requests

from app.utils.logging import get_logger

DEFAULT_BASE = "http://localhost:8000"

logger = get_logger("ivr-flow-engine.demo", "info")


def post_form(base_url, path, form, webhook_secret=None):
    url = urljoin(base_url.rstrip("/") + "/webhook/", path)
    headers = {"X-Webhook-Secret": webhook_secret} if webhook_secret else {}
    resp = requests.post(url, data=form, headers=headers, timeout=10)
    resp.raise_for_status()
    return resp.text


def describe(twiml):
    """One line per spoken/acted verb, for readable console output."""
    lines = []
    root = ElementTree.fromstring(twiml)
    for verb in root:
        if verb.tag == "Gather":
            prompt = " ".join((say.text or "") for say in verb.findall("Say"))
            lines.append(f"  Gather[{verb.get('input')}] {prompt}".rstrip())
        elif verb.tag == "Say":
            lines.append(f"  Say: {verb.text}")
        elif verb.tag == "Dial":
            lines.append(f"  Dial: {verb.text}")
        else:
            lines.append(f"  {verb.tag}")
    return lines


def next_action(twiml):
    """Input URL handed out by the last Gather/Dial/Record; it names the prompt being answered."""
    for verb in reversed(list(ElementTree.fromstring(twiml))):
        if verb.get("action"):
            return verb.get("action")
    return "input"


def hung_up(twiml):
    return ElementTree.fromstring(twiml).find("Hangup") is not None


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--base", default=os.environ.get("BASE_URL", DEFAULT_BASE))
    parser.add_argument("--call-id", required=True)
    parser.add_argument("--from", dest="from_number", required=True)
    parser.add_argument("--to", dest="to_number", required=True)
    parser.add_argument("--input", dest="inputs", action="append", default=[],
                        help="Caller input for the next prompt; repeat for each turn")
    parser.add_argument("--digits", action="store_true", help="Send inputs as Digits instead of SpeechResult")
    parser.add_argument("--no-status", action="store_true", help="Skip the final completed status callback")
    parser.add_argument("--webhook-secret", default=os.environ.get("WEBHOOK_SECRET"))
    parser.add_argument("--raw", action="store_true", help="Print the TwiML documents as returned")
    args = parser.parse_args()

    logger.info("Calling %s from %s (call_id=%s)", args.to_number, args.from_number, args.call_id)
    twiml = post_form(args.base, "voice", {
        "CallSid": args.call_id,
        "From": args.from_number,
        "To": args.to_number,
    }, webhook_secret=args.webhook_secret)
    print(twiml if args.raw else "\n".join(describe(twiml)))

    for value in args.inputs:
        if hung_up(twiml):
            break
        field = "Digits" if args.digits else "SpeechResult"
        logger.info("Caller says %r", value)
        twiml = post_form(args.base, next_action(twiml), {"CallSid": args.call_id, field: value},
                          webhook_secret=args.webhook_secret)
        print(twiml if args.raw else "\n".join(describe(twiml)))

    if not hung_up(twiml):
        logger.warning("Call still open after %d input(s)", len(args.inputs))

    if not args.no_status:
        post_form(args.base, "status", {"CallSid": args.call_id, "CallStatus": "completed"},
                  webhook_secret=args.webhook_secret)
        logger.info("Sent completed status for %s", args.call_id)


if __name__ == "__main__":
    main()
