"""
Simulate CRM connector events against a running LineBridge instance.
Bodies are sent the way the CRM sends them: bracket-nested form encoding.

Usage:
    python scripts/simulate_event.py
    python scripts/simulate_event.py --event dialog_start --member-id m1
    python scripts/simulate_event.py --event placement --line 2
    python scripts/simulate_event.py --event operator_message --text "Hello from the operator"
"""
import argparse
import asyncio
import json
import logging

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def _auth_fields(domain: str, member_id: str) -> dict:
    return {
        "auth[domain]": domain,
        "auth[member_id]": member_id,
        "auth[access_token]": "simulated_access_token",
        "auth[application_token]": "simulated_app_token",
        "auth[client_endpoint]": f"https://{domain}/rest/",
    }


def build_operator_message(domain: str, member_id: str, line: str, text: str) -> dict:
    return {
        "event": "ONIMCONNECTORMESSAGEADD",
        "data[CONNECTOR]": "linebridge_whatsapp",
        "data[LINE]": line,
        "data[MESSAGES][0][im][chat_id]": "1042",
        "data[MESSAGES][0][im][message_id]": "55821",
        "data[MESSAGES][0][message][id]": "55821",
        "data[MESSAGES][0][message][text]": text,
        "data[MESSAGES][0][chat][id]": "5511999990000",
        "data[MESSAGES][0][user][id]": "5511999990000",
        **_auth_fields(domain, member_id),
    }


def build_dialog_start(domain: str, member_id: str, line: str) -> dict:
    return {
        "event": "ONIMCONNECTORDIALOGSTART",
        "data[CONNECTOR]": "linebridge_whatsapp",
        "data[LINE]": line,
        "data[DATA][0][chat][id]": "5511999990000",
        **_auth_fields(domain, member_id),
    }


def build_placement(domain: str, member_id: str, line: str) -> dict:
    return {
        "PLACEMENT": "SETTING_CONNECTOR",
        "PLACEMENT_OPTIONS": json.dumps({"LINE": line, "ACTIVE_STATUS": 1}),
        **_auth_fields(domain, member_id),
    }


BUILDERS = {
    "operator_message": lambda a: build_operator_message(a.domain, a.member_id, a.line, a.text),
    "dialog_start": lambda a: build_dialog_start(a.domain, a.member_id, a.line),
    "placement": lambda a: build_placement(a.domain, a.member_id, a.line),
}


async def send_event(form: dict) -> httpx.Response:
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/events",
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        logger.info("Gateway response: %s %r", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate CRM connector events")
    parser.add_argument("--event", default="operator_message", choices=sorted(BUILDERS))
    parser.add_argument("--domain", default="demo.bitrix24.com")
    parser.add_argument("--member-id", default="demo_member")
    parser.add_argument("--line", default="1")
    parser.add_argument("--text", default="Hi, your order has shipped.")
    args = parser.parse_args()

    logger.info("Simulating %s for %s...", args.event, args.domain)
    await send_event(BUILDERS[args.event](args))


if __name__ == "__main__":
    asyncio.run(main())
