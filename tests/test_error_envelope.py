"""Tests for the error envelope format and error handling.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from yoink.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from yoink.api.schemas import Envelope, ErrorBody
from yoink.service.errors import (
    ConflictError,
    LastAdminError,
    NotMemberError,
    StorageUnavailableError,
    storage_guard,
)
from yoink.storage.errors import ConstraintViolation, StorageError


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid session")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    @pytest.mark.parametrize("code", ["Bad-Code", "1abc", "UPPER", ""])
    def test_error_code_must_be_snake_case(self, code):
        with pytest.raises(ValidationError):
            ErrorBody(code=code, message="x")

    def test_custom_snake_case_codes_accepted(self):
        assert ErrorBody(code="last_admin", message="x").code == "last_admin"


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_codes_cover_stable_set(self):
        assert set(_STATUS_TO_CODE.values()) == {
            "validation_error",
            "unauthorized",
            "forbidden",
            "not_found",
            "conflict",
            "server_error",
        }


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Not authenticated")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"] == {
            "code": "unauthorized",
            "message": "Not authenticated",
            "details": None,
        }
        assert data["request_id"]

    def test_error_response_custom_code_and_details(self):
        response = _error_response(
            403, "Not a member", details={"organization_id": "org-1"}, code="not_a_member"
        )

        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "not_a_member"
        assert data["error"]["details"] == {"organization_id": "org-1"}


class TestServiceErrors:
    def test_service_errors_carry_status_and_code(self):
        assert NotMemberError("u-1", "org-1").status_code == 403
        assert LastAdminError("org-1").status_code == 400
        assert StorageUnavailableError("tokens", "find_by_id").status_code == 500

    def test_storage_guard_translates_constraint_violation(self):
        with pytest.raises(ConflictError):
            with storage_guard("users", "save"):
                raise ConstraintViolation("email already exists", store="users")

    def test_storage_guard_translates_storage_error(self):
        with pytest.raises(StorageUnavailableError) as excinfo:
            with storage_guard("sessions", "find_by_id"):
                raise StorageError("connection refused", store="sessions")
        assert excinfo.value.status_code == 500
        assert isinstance(excinfo.value.__cause__, StorageError)

    def test_storage_guard_passes_service_errors_through(self):
        with pytest.raises(NotMemberError):
            with storage_guard("memberships", "find"):
                raise NotMemberError("u-1", "org-1")
