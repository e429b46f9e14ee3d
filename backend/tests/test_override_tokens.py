"""
Tests for override code issuance, redemption and application
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi import status

from proctorwatch.models.integrity import ProctoringModule, TokenPurpose
from proctorwatch.services.override_tokens import CODE_ALPHABET
from proctorwatch.utils.exceptions import (
    PermissionDenied, TokenAlreadyUsed, TokenExpired, TokenInvalid, ValidationFailure
)


def audit_actions(db, action):
    return [row for row in db.rows("audit_logs") if row["action"] == action]


class TestOverrideTokenAuthority:
    """Issuance and single-use redemption"""

    @pytest.mark.asyncio
    async def test_generate_code_shape(self, services, mock_admin, clock):
        token = await services.tokens.generate(TokenPurpose.MODULE_OVERRIDE, mock_admin["id"])

        assert len(token.code) == 6
        assert all(c in CODE_ALPHABET for c in token.code)
        assert not set(token.code) & set("IO01")
        assert (token.expires_at - token.created_at).total_seconds() == 300
        assert token.used is False

    def test_alphabet_has_32_unambiguous_symbols(self):
        assert len(CODE_ALPHABET) == 32
        assert len(set(CODE_ALPHABET)) == 32

    @pytest.mark.asyncio
    async def test_redeem_exactly_once(self, services, mock_admin, mock_student):
        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])

        redeemed = await services.tokens.redeem(token.code, mock_student["id"])
        assert redeemed.used is True
        assert redeemed.used_by == mock_student["id"]
        assert redeemed.created_by == mock_admin["id"]

        with pytest.raises(TokenAlreadyUsed):
            await services.tokens.redeem(token.code, mock_student["id"])

    @pytest.mark.asyncio
    async def test_redeem_is_case_insensitive(self, services, mock_admin, mock_student):
        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])
        redeemed = await services.tokens.redeem(f"  {token.code.lower()} ", mock_student["id"])
        assert redeemed.code == token.code

    @pytest.mark.asyncio
    async def test_redeem_after_ttl_expires(self, services, mock_admin, mock_student, clock):
        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])
        clock.advance(301)

        with pytest.raises(TokenExpired):
            await services.tokens.redeem(token.code, mock_student["id"])

    @pytest.mark.asyncio
    async def test_redeem_unknown_code(self, services, mock_student):
        with pytest.raises(TokenInvalid):
            await services.tokens.redeem("ABCDEF", mock_student["id"])

    @pytest.mark.asyncio
    async def test_malformed_code_rejected(self, services, mock_student):
        with pytest.raises(TokenInvalid):
            await services.tokens.redeem("AB0", mock_student["id"])

    @pytest.mark.asyncio
    async def test_wrong_purpose_does_not_consume(self, services, db, mock_admin, mock_student):
        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])

        with pytest.raises(TokenInvalid):
            await services.tokens.redeem(
                token.code, mock_student["id"], expected_purpose=TokenPurpose.MODULE_OVERRIDE
            )

        row = db.rows("override_codes")[0]
        assert row["used"] is False

    @pytest.mark.asyncio
    async def test_collision_draws_again(self, services, db, mock_admin):
        draws = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        services.tokens._draw_code = lambda: next(draws)

        first = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])
        second = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])

        assert first.code == "AAAAAA"
        assert second.code == "BBBBBB"

    def test_concurrent_redeemers_single_winner(self, services, mock_admin):
        token = asyncio.run(services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"]))
        barrier = threading.Barrier(8)

        def attempt(i):
            barrier.wait()
            try:
                asyncio.run(services.tokens.redeem(token.code, f"redeemer-{i}"))
                return "ok"
            except TokenAlreadyUsed:
                return "already_used"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        assert results.count("ok") == 1
        assert results.count("already_used") == 7

    @pytest.mark.asyncio
    async def test_codes_never_logged_in_full(self, services, mock_admin, caplog):
        caplog.set_level("INFO")
        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])
        assert token.code not in caplog.text
        assert token.code[:2] in caplog.text


class TestOverrideApplication:
    """What a redeemed code unlocks"""

    @pytest.mark.asyncio
    async def test_face_reset_end_to_end(self, services, db, clock, mock_admin, mock_student):
        db.seed("face_registrations", user_id=mock_student["id"], embedding=[0.1, 0.2])

        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])
        clock.advance(4 * 60)
        result = await services.overrides.redeem_and_apply(
            token.code, mock_student["id"], reason="Lighting changed after registration"
        )

        assert result["purpose"] == "face_reset"
        assert result["student_id"] == mock_student["id"]
        assert db.rows("face_registrations") == []

        resets = audit_actions(db, "FACE_ID_RESET")
        assert len(resets) == 1
        assert resets[0]["details"]["via"] == "override_code"
        assert resets[0]["target_id"] == mock_student["id"]
        assert len(audit_actions(db, "OVERRIDE_CODE_REDEEMED")) == 1

        late = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])
        clock.advance(6 * 60)
        with pytest.raises(TokenExpired):
            await services.overrides.redeem_and_apply(
                late.code, mock_student["id"], reason="Second attempt"
            )
        assert len(audit_actions(db, "FACE_ID_RESET")) == 1

    @pytest.mark.asyncio
    async def test_module_override_applied(self, services, db, mock_admin, mock_student, active_session):
        token = await services.tokens.generate(TokenPurpose.MODULE_OVERRIDE, mock_admin["id"])

        result = await services.overrides.redeem_and_apply(
            token.code,
            mock_student["id"],
            reason="Webcam driver crash",
            session_id=active_session["id"],
            disabled_modules=["identity", "object_detection"],
        )

        assert result["disabled_modules"] == ["identity", "object_detection"]
        override = db.rows("module_overrides")[0]
        assert override["admin_id"] == mock_admin["id"]
        applied = audit_actions(db, "ADMIN_OVERRIDE_APPLIED")
        assert applied[0]["details"]["via"] == "override_code"

        modules = await services.overrides.get_disabled_modules(active_session["id"])
        assert modules == {ProctoringModule.IDENTITY, ProctoringModule.OBJECT_DETECTION}

    @pytest.mark.asyncio
    async def test_latest_override_supersedes(self, services, clock, mock_admin, active_session):
        await services.overrides.apply_module_override(
            active_session["id"], ["audio"], "Noisy room", mock_admin["id"], via="admin_credentials"
        )
        clock.advance(30)
        await services.overrides.apply_module_override(
            active_session["id"], ["network"], "VPN required by employer", mock_admin["id"], via="admin_credentials"
        )

        modules = await services.overrides.get_disabled_modules(active_session["id"])
        assert modules == {ProctoringModule.NETWORK}

    @pytest.mark.asyncio
    async def test_missing_reason_keeps_code(self, services, db, mock_admin, mock_student):
        token = await services.tokens.generate(TokenPurpose.FACE_RESET, mock_admin["id"])

        with pytest.raises(ValidationFailure):
            await services.overrides.redeem_and_apply(token.code, mock_student["id"], reason="  ")

        assert db.rows("override_codes")[0]["used"] is False

    @pytest.mark.asyncio
    async def test_module_override_needs_session(self, services, db, mock_admin, mock_student):
        token = await services.tokens.generate(TokenPurpose.MODULE_OVERRIDE, mock_admin["id"])

        with pytest.raises(ValidationFailure):
            await services.overrides.redeem_and_apply(
                token.code, mock_student["id"], reason="Camera broken", disabled_modules=["identity"]
            )

        assert db.rows("override_codes")[0]["used"] is False

    @pytest.mark.asyncio
    async def test_unknown_module_rejected(self, services, mock_admin, active_session):
        with pytest.raises(ValidationFailure):
            await services.overrides.apply_module_override(
                active_session["id"], ["telepathy"], "reason", mock_admin["id"], via="admin_credentials"
            )

    @pytest.mark.asyncio
    async def test_admin_credentials(self, services, mock_admin):
        admin = await services.overrides.authorize_admin_credentials("admin1", "AdminPass123")
        assert admin["id"] == mock_admin["id"]

        with pytest.raises(PermissionDenied):
            await services.overrides.authorize_admin_credentials("admin1", "wrong")

    @pytest.mark.asyncio
    async def test_student_credentials_do_not_authorize(self, services, db):
        from proctorwatch.core.security import get_password_hash

        db.seed("users", username="sneaky", role="student", is_active=True,
                password_hash=get_password_hash("pass"))
        with pytest.raises(PermissionDenied):
            await services.overrides.authorize_admin_credentials("sneaky", "pass")


class TestOverrideEndpoints:
    """Tests for override endpoints"""

    def test_admin_generates_code(self, client, admin_auth_headers):
        response = client.post(
            "/api/v1/overrides/codes",
            headers=admin_auth_headers,
            json={"purpose": "module_override"},
        )
        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert len(data["code"]) == 6
        assert data["purpose"] == "module_override"

    def test_student_cannot_generate_code(self, client, auth_headers):
        response = client.post(
            "/api/v1/overrides/codes",
            headers=auth_headers,
            json={"purpose": "face_reset"},
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_redeem_rejections_share_one_message(self, client, admin_auth_headers, auth_headers):
        code = client.post(
            "/api/v1/overrides/codes", headers=admin_auth_headers, json={"purpose": "face_reset"}
        ).json()["code"]

        ok = client.post(
            "/api/v1/overrides/redeem", headers=auth_headers, json={"code": code, "reason": "Glasses"}
        )
        assert ok.status_code == status.HTTP_200_OK

        again = client.post(
            "/api/v1/overrides/redeem", headers=auth_headers, json={"code": code, "reason": "Glasses"}
        )
        unknown = client.post(
            "/api/v1/overrides/redeem", headers=auth_headers, json={"code": "ZZZZZZ", "reason": "Glasses"}
        )
        assert again.status_code == status.HTTP_409_CONFLICT
        assert again.json()["detail"] == unknown.json()["detail"]
        assert "expired" in unknown.json()["detail"]

    def test_admin_credentials_applies_override(self, client, mock_admin, auth_headers, active_session, db):
        response = client.post(
            "/api/v1/overrides/admin-credentials",
            headers=auth_headers,
            json={
                "username": "admin1",
                "password": "AdminPass123",
                "session_id": active_session["id"],
                "disabled_modules": ["audio"],
                "reason": "Microphone unavailable",
            },
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["disabled_modules"] == ["audio"]
        applied = audit_actions(db, "ADMIN_OVERRIDE_APPLIED")
        assert applied[0]["details"]["via"] == "admin_credentials"

        modules = client.get(
            f"/api/v1/overrides/sessions/{active_session['id']}/disabled-modules",
            headers=auth_headers,
        )
        assert modules.json()["disabled_modules"] == ["audio"]

    def test_admin_credentials_wrong_password(self, client, mock_admin, auth_headers, active_session):
        response = client.post(
            "/api/v1/overrides/admin-credentials",
            headers=auth_headers,
            json={
                "username": "admin1",
                "password": "nope",
                "session_id": active_session["id"],
                "disabled_modules": ["audio"],
                "reason": "Microphone unavailable",
            },
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN
