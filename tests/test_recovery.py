import pytest

from portalauth.service.errors import (
    InvalidSecurityAnswerError,
    RateLimitExceededError,
    ResetTokenExhaustedError,
    ResetTokenExpiredError,
    ResetTokenInvalidError,
    TokenRevokedError,
    ValidationError,
)
from portalauth.service.recovery import GENERIC_REQUEST_MESSAGE
from portalauth.storage.models import ResetState

EMAIL = "user@inst.example"
PASSWORD = "Abc12345!"
NEW_PASSWORD = "Xyz98765?"


async def _register(components, *, questions=((1, "Rex"),), email=EMAIL):
    return await components.auth.register(
        email=email,
        password=PASSWORD,
        first_name="Ana",
        last_name="Silva",
        organizational_unit_id=1,
        security_questions=list(questions) or None,
    )


async def _request_token(components, email=EMAIL):
    components.email.send_password_reset.reset_mock()
    message = await components.recovery.request(email, ip_address="10.0.0.1")
    assert message == GENERIC_REQUEST_MESSAGE
    args, kwargs = components.email.send_password_reset.call_args
    return args[1], kwargs


class TestResetRequest:
    @pytest.mark.asyncio
    async def test_unknown_email_gets_generic_message(self, components):
        message = await components.recovery.request("ghost@inst.example")
        assert message == GENERIC_REQUEST_MESSAGE
        components.email.send_password_reset.assert_not_called()

    @pytest.mark.asyncio
    async def test_known_email_gets_same_message_and_a_link(self, components):
        await _register(components)
        token, kwargs = await _request_token(components)
        assert kwargs == {"requires_security_question": True}
        claims = components.tokens.verify_password_reset(token)
        record = components.store.get_reset_token(claims["jti"])
        assert record.email_sent_at is not None
        assert record.security_question_id == 1

    @pytest.mark.asyncio
    async def test_disallowed_domain_gets_generic_message(self, components, settings):
        await _register(components)
        components.recovery.settings = settings.model_copy(
            update={"allowed_email_domains": "other.example"}
        )
        assert await components.recovery.request(EMAIL) == GENERIC_REQUEST_MESSAGE
        components.email.send_password_reset.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_request_is_rate_limited(self, components):
        await components.recovery.request(EMAIL)
        with pytest.raises(RateLimitExceededError) as excinfo:
            await components.recovery.request(EMAIL.upper())
        assert excinfo.value.status_code == 429

    @pytest.mark.asyncio
    async def test_new_request_supersedes_old_token(self, components):
        await _register(components)
        old_token, _ = await _request_token(components)
        components.clock.advance(301)
        await _request_token(components)
        with pytest.raises(ResetTokenInvalidError):
            await components.recovery.verify_security_question(old_token, 1, "Rex")

    @pytest.mark.asyncio
    async def test_failed_email_leaves_token_unsent(self, components):
        await _register(components)
        components.email.send_password_reset.return_value = False
        token, _ = await _request_token(components)
        assert components.recovery.status(token).state == ResetState.REQUESTED


class TestSecurityQuestion:
    @pytest.mark.asyncio
    async def test_correct_answer_verifies(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        result = await components.recovery.verify_security_question(token, 1, "  rex ")
        assert result.verified
        assert result.attempts_remaining == 2
        assert components.recovery.status(token).state == ResetState.VERIFIED

    @pytest.mark.asyncio
    async def test_repeat_verification_is_counted(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        await components.recovery.verify_security_question(token, 1, "Rex")
        for expected_remaining in (1, 0):
            result = await components.recovery.verify_security_question(token, 1, "Rex")
            assert result.verified
            assert result.attempts_remaining == expected_remaining
        claims = components.tokens.verify_password_reset(token)
        assert components.store.get_reset_token(claims["jti"]).attempts_count == 3
        # Counting never locks a verified token
        assert components.recovery.status(token).state == ResetState.VERIFIED
        await components.recovery.confirm(token, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_wrong_answers_count_down(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        with pytest.raises(InvalidSecurityAnswerError) as excinfo:
            await components.recovery.verify_security_question(token, 1, "Max")
        assert excinfo.value.detail["attempts_remaining"] == 2

    @pytest.mark.asyncio
    async def test_right_answer_to_wrong_question_fails(self, components):
        await _register(components, questions=((1, "Rex"), (2, "Lisbon")))
        token, _ = await _request_token(components)
        with pytest.raises(InvalidSecurityAnswerError):
            await components.recovery.verify_security_question(token, 2, "Rex")

    @pytest.mark.asyncio
    async def test_three_failures_exhaust_token(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        for _ in range(2):
            with pytest.raises(InvalidSecurityAnswerError):
                await components.recovery.verify_security_question(token, 1, "Max")
        with pytest.raises(ResetTokenExhaustedError):
            await components.recovery.verify_security_question(token, 1, "Max")
        # Even the correct answer is refused now
        with pytest.raises(ResetTokenExhaustedError):
            await components.recovery.verify_security_question(token, 1, "Rex")
        assert components.recovery.status(token).state == ResetState.FAILED
        with pytest.raises(ResetTokenExhaustedError):
            await components.recovery.confirm(token, NEW_PASSWORD)

    @pytest.mark.asyncio
    async def test_no_question_required_rejects_verification(self, components):
        await _register(components, questions=())
        token, kwargs = await _request_token(components)
        assert kwargs == {"requires_security_question": False}
        with pytest.raises(ValidationError):
            await components.recovery.verify_security_question(token, 1, "Rex")

    @pytest.mark.asyncio
    async def test_expired_token(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        components.clock.advance(31 * 60)
        with pytest.raises(ResetTokenExpiredError):
            await components.recovery.verify_security_question(token, 1, "Rex")

    @pytest.mark.asyncio
    async def test_garbage_token(self, components):
        with pytest.raises(ResetTokenInvalidError):
            await components.recovery.verify_security_question("garbage", 1, "Rex")
        with pytest.raises(ResetTokenInvalidError):
            await components.recovery.verify_security_question("0" * 64, 1, "Rex")


class TestConfirm:
    @pytest.mark.asyncio
    async def test_confirm_requires_verification(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        with pytest.raises(ValidationError) as excinfo:
            await components.recovery.confirm(token, NEW_PASSWORD)
        assert excinfo.value.detail == {"requires_security_question": True}

    @pytest.mark.asyncio
    async def test_confirm_enforces_policy(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        await components.recovery.verify_security_question(token, 1, "Rex")
        with pytest.raises(ValidationError) as excinfo:
            await components.recovery.confirm(token, "short")
        assert excinfo.value.detail["errors"]

    @pytest.mark.asyncio
    async def test_confirm_once_and_sign_out_everywhere(self, components):
        user = await _register(components)
        login = await components.auth.login(EMAIL, PASSWORD, ip_address="10.0.0.1")
        old_access = login.tokens.access.token

        token, _ = await _request_token(components)
        await components.recovery.verify_security_question(token, 1, "Rex")
        components.clock.advance(1)
        assert await components.recovery.confirm(token, NEW_PASSWORD) == user.id

        with pytest.raises(ResetTokenInvalidError):
            await components.recovery.confirm(token, "Other123$")
        with pytest.raises(TokenRevokedError):
            await components.auth.authenticate(old_access)
        with pytest.raises(TokenRevokedError):
            await components.auth.refresh(login.tokens.refresh.token, ip_address="10.0.0.1")

        relogin = await components.auth.login(EMAIL, NEW_PASSWORD, ip_address="10.0.0.2")
        ctx = await components.auth.authenticate(relogin.tokens.access.token)
        assert ctx.user_id == user.id
        components.email.send_password_changed.assert_called_once_with(EMAIL)
        assert components.recovery.status(token).state == ResetState.CONFIRMED

    @pytest.mark.asyncio
    async def test_bare_token_value_is_accepted(self, components):
        await _register(components, questions=())
        token, _ = await _request_token(components)
        value = components.tokens.verify_password_reset(token)["jti"]
        await components.recovery.confirm(value, NEW_PASSWORD)
        login = await components.auth.login(EMAIL, NEW_PASSWORD)
        assert login.user.email == EMAIL


class TestStatusAndCleanup:
    @pytest.mark.asyncio
    async def test_status_describes_pending_question(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        status = components.recovery.status(token)
        assert status.state == ResetState.AWAITING_SECURITY_ANSWER
        assert status.question_id == 1
        assert status.question_text == "What was the name of your first pet?"
        assert status.attempts_remaining == 3

    @pytest.mark.asyncio
    async def test_cleanup_drops_old_tokens(self, components):
        await _register(components)
        token, _ = await _request_token(components)
        value = components.tokens.verify_password_reset(token)["jti"]
        components.clock.advance(2 * 24 * 3600)
        assert components.recovery.cleanup_expired() == 1
        assert components.store.get_reset_token(value) is None
