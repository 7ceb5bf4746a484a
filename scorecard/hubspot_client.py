"""HubSpot API client: create/update contacts, create deals, account check.

Every call has a timeout. Non-2xx responses, timeouts and connection
failures are raised as HubSpotError with an error_type the retry queue
understands.
"""

import os
import re
import sys

import requests

from .config import get_hubspot_config
from .errors import HubSpotError, AUTH_ERROR

# Contact → Deal association (HubSpot-defined type id)
DEAL_TO_CONTACT_ASSOCIATION = {"associationCategory": "HUBSPOT_DEFINED", "associationTypeId": 3}

_EXISTING_ID = re.compile(r"Existing ID:\s*(\d+)")


def _token():
    return os.getenv("HUBSPOT_ACCESS_TOKEN")


def _headers():
    token = _token()
    if not token:
        raise HubSpotError("HUBSPOT_ACCESS_TOKEN environment variable not set", error_type=AUTH_ERROR)
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def _request(method, path, **kwargs):
    """Send a request and return the parsed JSON body (or {} for empty bodies)."""
    cfg = get_hubspot_config()
    url = f"{cfg['base_url']}{path}"

    try:
        resp = requests.request(method, url, headers=_headers(), timeout=cfg['timeout_seconds'], **kwargs)
    except requests.exceptions.RequestException as e:
        raise HubSpotError.from_exception(e) from e

    if resp.status_code >= 400:
        raise HubSpotError.from_response(resp)

    if not resp.content:
        return {}
    return resp.json()


# ─── Contacts ────────────────────────────────────────────────────────────────

def create_contact(properties):
    """Create a contact. Returns {"id": ..., "created": True}."""
    data = _request("POST", "/crm/v3/objects/contacts", json={"properties": properties})
    return {"id": str(data["id"]), "created": True}


def update_contact(contact_id, properties):
    data = _request("PATCH", f"/crm/v3/objects/contacts/{contact_id}", json={"properties": properties})
    return {"id": str(data.get("id", contact_id)), "created": False}


def create_or_update_contact(properties):
    """
    Create a contact, or update it if HubSpot reports the email already exists
    (409 with "Existing ID: <id>" in the message).
    """
    try:
        return create_contact(properties)
    except HubSpotError as e:
        match = _EXISTING_ID.search(str(e)) if e.status_code == 409 else None
        if not match:
            raise
        contact_id = match.group(1)
        print(f"[hubspot] Contact exists ({contact_id}), updating instead", file=sys.stderr)
        return update_contact(contact_id, properties)


# ─── Deals ────────────────────────────────────────────────────────────────────

def create_deal(properties, contact_id=None):
    """Create a deal, optionally associated with a contact. Returns {"id": ...}."""
    body = {"properties": properties}
    if contact_id:
        body["associations"] = [{
            "to": {"id": str(contact_id)},
            "types": [DEAL_TO_CONTACT_ASSOCIATION],
        }]
    data = _request("POST", "/crm/v3/objects/deals", json=body)
    return {"id": str(data["id"])}


# ─── Account ─────────────────────────────────────────────────────────────────

def get_account_details():
    """Lightweight authenticated call used for health checks."""
    return _request("GET", "/account-info/v3/details")
