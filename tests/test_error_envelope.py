import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from portalauth.api.error_handling import error_response
from portalauth.api.schemas import Envelope, ErrorBody
from portalauth.logging import set_correlation_id
from portalauth.service import errors


class TestErrorBody:
    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="nope")

    @pytest.mark.parametrize("code", sorted(errors.ERROR_CODES))
    def test_every_service_code_is_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestErrorResponse:
    def test_status_maps_to_default_code(self):
        resp = error_response(404, "missing")
        body = json.loads(resp.body)
        assert resp.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {"code": "not_found", "message": "missing", "details": None}

    def test_unmapped_status_is_server_error(self):
        body = json.loads(error_response(418, "odd").body)
        assert body["error"]["code"] == "server_error"

    def test_headers_and_details_pass_through(self):
        resp = error_response(
            429, "slow down", {"retry_after": 7}, code="rate_limit_exceeded", headers={"Retry-After": "7"}
        )
        assert resp.headers["Retry-After"] == "7"
        assert json.loads(resp.body)["error"]["details"] == {"retry_after": 7}

    def test_request_id_follows_correlation_id(self):
        set_correlation_id("corr-1")
        assert Envelope(status="ok").request_id == "corr-1"


class TestServiceErrors:
    def test_status_codes(self):
        assert errors.InvalidCredentialsError("x").status_code == 401
        assert errors.AccountInactiveError("x").status_code == 403
        assert errors.TokenRevokedError("x").status_code == 401
        assert errors.ResetTokenExhaustedError("x").status_code == 400
        assert errors.StoreUnavailableError("x").status_code == 503

    def test_token_errors_are_invalid_token(self):
        for cls in (
            errors.TokenExpiredError,
            errors.TokenMalformedError,
            errors.TokenReuseDetectedError,
            errors.SessionExpiredError,
        ):
            assert issubclass(cls, errors.InvalidTokenError)

    def test_rate_limit_retry_after_floor(self):
        exc = errors.RateLimitExceededError("x", retry_after=0)
        assert exc.retry_after == 1
        assert exc.detail == {"retry_after": 1}
