import pytest
from fastapi import HTTPException
from starlette.requests import Request

from marketplace.utils.security import determine_role, ensure_vendor_access, require_internal_service

def _request(headers):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/v1/orders/x/verify",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": ("10.0.0.5", 1234),
        "query_string": b"",
    }
    return Request(scope)

def test_valid_internal_credentials():
    req = _request({"X-Internal-Service": "payment-service", "X-Internal-Secret": "test-internal-secret"})
    assert require_internal_service(req) == "payment-service"

def test_missing_credentials():
    with pytest.raises(HTTPException) as exc:
        require_internal_service(_request({}))
    assert exc.value.status_code == 401

def test_wrong_secret_logged_critical(caplog):
    req = _request({"X-Internal-Service": "payment-service", "X-Internal-Secret": "nope"})
    with caplog.at_level("CRITICAL"):
        with pytest.raises(HTTPException) as exc:
            require_internal_service(req)
    assert exc.value.status_code == 401
    assert "security.invalid_internal_secret" in caplog.text

def test_unlisted_service_forbidden():
    req = _request({"X-Internal-Service": "reporting", "X-Internal-Secret": "test-internal-secret"})
    with pytest.raises(HTTPException) as exc:
        require_internal_service(req)
    assert exc.value.status_code == 403

def test_unconfigured_secret_rejects_everything(monkeypatch):
    monkeypatch.setattr("marketplace.utils.security.INTERNAL_SERVICE_SECRET", "")
    req = _request({"X-Internal-Service": "payment-service", "X-Internal-Secret": "anything"})
    with pytest.raises(HTTPException):
        require_internal_service(req)

def test_vendor_access():
    vendor = {"id": "u1", "role": "vendor", "vendor_id": "v1"}
    ensure_vendor_access(vendor, "v1")
    ensure_vendor_access({"id": "a", "role": "admin"}, "v2")
    with pytest.raises(HTTPException):
        ensure_vendor_access(vendor, "v2")
    with pytest.raises(HTTPException):
        ensure_vendor_access({"id": "b", "role": "buyer", "vendor_id": "v1"}, "v1")

def test_determine_role():
    assert determine_role({"role": "ADMIN"}) == "admin"
    assert determine_role({"role": "vendor"}) == "vendor"
    assert determine_role({"role": "superuser"}) == "buyer"
    assert determine_role(None) == "buyer"
