# tests/test_hubspot_client.py
"""
HubSpot HTTP client and error classification tests

Run with: pytest tests/test_hubspot_client.py -v
"""

import json
from unittest.mock import Mock, patch

import pytest
import requests

from scorecard import hubspot_client
from scorecard.errors import HubSpotError, RateLimitExceeded, ValidationError


def _response(status, body=None, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.content = json.dumps(body).encode() if body is not None else b""
    resp.text = resp.content.decode()
    if body is None:
        resp.json = Mock(side_effect=ValueError("no body"))
    else:
        resp.json = Mock(return_value=body)
    return resp


@pytest.fixture
def mock_request():
    with patch("scorecard.hubspot_client.requests.request") as m:
        yield m


# ============================================================================
# TEST: Requests
# ============================================================================

class TestRequests:

    def test_create_contact(self, mock_request):
        mock_request.return_value = _response(201, {"id": "101"})

        result = hubspot_client.create_contact({"email": "jane@example.com"})

        assert result == {"id": "101", "created": True}
        args, kwargs = mock_request.call_args
        assert args == ("POST", "https://api.hubapi.com/crm/v3/objects/contacts")
        assert kwargs["headers"]["Authorization"] == "Bearer test-token"
        assert kwargs["json"] == {"properties": {"email": "jane@example.com"}}
        assert kwargs["timeout"] == 10

    def test_missing_token(self, mock_request, monkeypatch):
        monkeypatch.delenv("HUBSPOT_ACCESS_TOKEN")

        with pytest.raises(HubSpotError) as exc:
            hubspot_client.create_contact({"email": "jane@example.com"})

        assert exc.value.error_type == "auth_error"
        mock_request.assert_not_called()

    def test_existing_contact_is_updated(self, mock_request):
        mock_request.side_effect = [
            _response(409, {"status": "error", "message": "Contact already exists. Existing ID: 555"}),
            _response(200, {"id": "555"}),
        ]

        result = hubspot_client.create_or_update_contact({"email": "jane@example.com"})

        assert result == {"id": "555", "created": False}
        method, url = mock_request.call_args[0]
        assert method == "PATCH"
        assert url.endswith("/crm/v3/objects/contacts/555")

    def test_other_conflicts_are_raised(self, mock_request):
        mock_request.return_value = _response(409, {"message": "Conflict"})

        with pytest.raises(HubSpotError) as exc:
            hubspot_client.create_or_update_contact({"email": "jane@example.com"})
        assert exc.value.error_type == "validation_error"

    def test_create_deal_with_association(self, mock_request):
        mock_request.return_value = _response(201, {"id": "201"})

        assert hubspot_client.create_deal({"dealname": "x"}, contact_id="101") == {"id": "201"}

        body = mock_request.call_args[1]["json"]
        assert body["associations"][0]["to"] == {"id": "101"}
        assert body["associations"][0]["types"][0]["associationTypeId"] == 3

    def test_account_details(self, mock_request):
        mock_request.return_value = _response(200, {"portalId": 42})
        assert hubspot_client.get_account_details() == {"portalId": 42}


# ============================================================================
# TEST: Error classification
# ============================================================================

class TestErrorClassification:

    @pytest.mark.parametrize("status,error_type,retryable", [
        (400, "validation_error", False),
        (401, "auth_error", True),
        (403, "auth_error", True),
        (422, "validation_error", False),
        (429, "rate_limit", True),
        (500, "server_error", True),
        (503, "server_error", True),
        (418, "server_error", True),
    ])
    def test_status_codes(self, mock_request, status, error_type, retryable):
        mock_request.return_value = _response(status, {"message": "nope"})

        with pytest.raises(HubSpotError) as exc:
            hubspot_client.create_contact({"email": "jane@example.com"})

        assert exc.value.error_type == error_type
        assert exc.value.status_code == status
        assert exc.value.is_retryable is retryable
        assert f"({status})" in str(exc.value)

    def test_retry_after_header(self, mock_request):
        mock_request.return_value = _response(429, {"message": "slow down"}, headers={"Retry-After": "7"})

        with pytest.raises(HubSpotError) as exc:
            hubspot_client.create_contact({})
        assert exc.value.retry_after == 7

    @pytest.mark.parametrize("error", [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("refused"),
    ])
    def test_network_failures(self, mock_request, error):
        mock_request.side_effect = error

        with pytest.raises(HubSpotError) as exc:
            hubspot_client.create_contact({})
        assert exc.value.error_type == "network_error"
        assert exc.value.is_retryable

    def test_from_exception(self):
        assert HubSpotError.from_exception(ValidationError("bad")).error_type == "validation_error"
        assert HubSpotError.from_exception(RuntimeError("?")).error_type == "server_error"

        limited = RateLimitExceeded(retry_after=3)
        assert HubSpotError.from_exception(limited) is limited

    def test_to_dict(self):
        data = HubSpotError("down", status_code=503).to_dict()
        assert data == {
            "error": "down", "error_type": "server_error", "status_code": 503,
            "retry_after": None, "retryable": True,
        }
