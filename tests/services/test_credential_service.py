"""Tests for CredentialService (encrypted per-user vendor keys)."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.db.models import ProviderCredential, ValidationStatus
from src.errors import AuthError, NotFoundError, ProviderError, ValidationError
from src.services.credential_service import CredentialService, parse_vendor
from src.services.key_validator import ValidationOutcome, ValidationResult
from src.services.model_catalog import Vendor


def _result(outcome: ValidationOutcome, vendor: str = "openai") -> ValidationResult:
    return ValidationResult(
        vendor=vendor,
        valid=outcome == ValidationOutcome.VALID,
        outcome=outcome,
        error=None if outcome == ValidationOutcome.VALID else f"{outcome.value}",
    )


@pytest.fixture
def validator():
    mock = MagicMock()
    mock.validate = AsyncMock(return_value=_result(ValidationOutcome.VALID))
    return mock


@pytest.fixture
def svc(db_session, validator):
    return CredentialService(db_session, validator=validator)


async def _save(svc, vendor="openai", secret="sk-test-1234567890", user_id="u1", **kw):
    return await svc.save_credential(user_id, vendor, secret, **kw)


class TestParseVendor:

    def test_accepts_enum_and_string(self):
        assert parse_vendor(Vendor.GROQ) is Vendor.GROQ
        assert parse_vendor(" OpenAI ") is Vendor.OPENAI

    def test_unknown_vendor_raises(self):
        with pytest.raises(ValidationError, match="Unknown provider"):
            parse_vendor("acme")


class TestSaveCredential:

    @pytest.mark.asyncio
    async def test_saves_encrypted_and_valid(self, svc, db_session):
        response = await _save(svc, default_model="gpt-4.1")

        assert response["validation"]["valid"] is True
        view = response["credential"]
        assert view["masked_key"] == "sk-t**********7890"
        assert view["validation_status"] == "valid"
        assert view["default_model"] == "gpt-4.1"

        row = db_session.query(ProviderCredential).one()
        assert row.encrypted_secret
        assert "sk-test-1234567890" not in row.encrypted_secret
        assert row.is_enabled is True
        assert row.last_validated_at is not None

    @pytest.mark.asyncio
    async def test_second_save_updates_same_row(self, svc, db_session):
        await _save(svc, secret="sk-first-key-0001")
        await _save(svc, secret="sk-second-key-0002")
        assert db_session.query(ProviderCredential).count() == 1
        assert svc.get_secret("u1", "openai") == "sk-second-key-0002"

    @pytest.mark.asyncio
    async def test_invalid_key_raises_auth_error_and_stores_nothing(
        self, svc, validator, db_session
    ):
        validator.validate.return_value = _result(ValidationOutcome.INVALID_KEY)
        with pytest.raises(AuthError):
            await _save(svc)
        assert db_session.query(ProviderCredential).count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [
        ValidationOutcome.TIMEOUT,
        ValidationOutcome.NETWORK_ERROR,
        ValidationOutcome.RATE_LIMITED,
        ValidationOutcome.PROVIDER_ERROR,
    ])
    async def test_inconclusive_probe_raises_provider_error(
        self, svc, validator, db_session, outcome
    ):
        validator.validate.return_value = _result(outcome)
        with pytest.raises(ProviderError):
            await _save(svc)
        assert db_session.query(ProviderCredential).count() == 0

    @pytest.mark.asyncio
    async def test_empty_secret_rejected_without_probe(self, svc, validator):
        with pytest.raises(ValidationError):
            await _save(svc, secret="   ")
        validator.validate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_vendor_rejected(self, svc):
        with pytest.raises(ValidationError):
            await _save(svc, vendor="acme")


class TestGetSecret:

    @pytest.mark.asyncio
    async def test_round_trip(self, svc):
        await _save(svc)
        assert svc.get_secret("u1", Vendor.OPENAI) == "sk-test-1234567890"

    def test_missing_key(self, svc):
        with pytest.raises(AuthError, match="No API key"):
            svc.get_secret("u1", "openai")

    @pytest.mark.asyncio
    async def test_disabled_key(self, svc):
        await _save(svc)
        svc.set_enabled("u1", "openai", False)
        with pytest.raises(AuthError, match="disabled"):
            svc.get_secret("u1", "openai")

    @pytest.mark.asyncio
    async def test_not_valid_status(self, svc, db_session):
        await _save(svc)
        row = db_session.query(ProviderCredential).one()
        row.validation_status = ValidationStatus.invalid.value
        db_session.commit()
        with pytest.raises(AuthError, match="not valid"):
            svc.get_secret("u1", "openai")

    @pytest.mark.asyncio
    async def test_blob_bound_to_owner(self, svc, db_session):
        """A blob copied onto another user's row fails to decrypt."""
        await _save(svc, user_id="alice")
        await _save(svc, user_id="bob", secret="sk-bob-key-000000")
        rows = {r.user_id: r for r in db_session.query(ProviderCredential)}
        rows["bob"].encrypted_secret = rows["alice"].encrypted_secret
        db_session.commit()
        with pytest.raises(AuthError, match="cannot be decrypted"):
            svc.get_secret("bob", "openai")

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, svc):
        await _save(svc, user_id="alice")
        with pytest.raises(AuthError):
            svc.get_secret("bob", "openai")


class TestRevalidate:

    @pytest.mark.asyncio
    async def test_invalid_verdict_recorded(self, svc, validator, db_session):
        await _save(svc)
        validator.validate.return_value = _result(ValidationOutcome.INVALID_KEY)
        result = await svc.revalidate("u1", "openai")
        assert result.outcome == ValidationOutcome.INVALID_KEY
        assert db_session.query(ProviderCredential).one().validation_status == "invalid"

    @pytest.mark.asyncio
    async def test_timeout_leaves_status(self, svc, validator, db_session):
        await _save(svc)
        validator.validate.return_value = _result(ValidationOutcome.TIMEOUT)
        await svc.revalidate("u1", "openai")
        assert db_session.query(ProviderCredential).one().validation_status == "valid"

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, svc):
        with pytest.raises(NotFoundError):
            await svc.revalidate("u1", "openai")


class TestListAndDelete:

    @pytest.mark.asyncio
    async def test_list_is_masked(self, svc):
        await _save(svc)
        await _save(svc, vendor="groq", secret="gsk_abcdefghijklmnop")
        views = svc.list_credentials("u1")
        assert [v["vendor"] for v in views] == ["groq", "openai"]
        for view in views:
            assert "*" in view["masked_key"]
            assert view["has_key"] is True

    @pytest.mark.asyncio
    async def test_available_vendors(self, svc):
        await _save(svc)
        await _save(svc, vendor="groq", secret="gsk_abcdefghijklmnop")
        svc.set_enabled("u1", "groq", False)
        assert svc.available_vendors("u1") == [Vendor.OPENAI]

    @pytest.mark.asyncio
    async def test_delete_clears_secret(self, svc):
        await _save(svc)
        assert svc.delete_credential("u1", "openai") is True
        view = svc.list_credentials("u1")[0]
        assert view["has_key"] is False
        assert view["masked_key"] is None
        assert svc.available_vendors("u1") == []
        with pytest.raises(AuthError):
            svc.get_secret("u1", "openai")

    @pytest.mark.asyncio
    async def test_delete_keeps_validation_status(self, svc):
        await _save(svc)
        svc.delete_credential("u1", "openai")
        view = svc.list_credentials("u1")[0]
        assert view["validation_status"] == "valid"
        assert view["last_validated_at"] is not None
        assert view["has_key"] is False

    def test_delete_missing_returns_false(self, svc):
        assert svc.delete_credential("u1", "openai") is False

    def test_set_enabled_missing_raises(self, svc):
        with pytest.raises(NotFoundError):
            svc.set_enabled("u1", "openai", True)

    @pytest.mark.asyncio
    async def test_default_model(self, svc):
        await _save(svc)
        svc.set_default_model("u1", "openai", "o4-mini")
        assert svc.list_credentials("u1")[0]["default_model"] == "o4-mini"


class TestCustomModels:

    @pytest.mark.asyncio
    async def test_add_and_catalog(self, svc):
        await _save(svc, vendor="groq", secret="gsk_abcdefghijklmnop")
        svc.add_custom_model("u1", {
            "vendor": "groq", "id": "my-llama", "capabilities": {"tools": True},
        })
        catalog = svc.build_catalog("u1")
        model = catalog.get_model("my-llama")
        assert model.is_custom
        assert model.capabilities.tools is True
        assert svc.build_catalog("u2").get_model("my-llama") is None

    @pytest.mark.asyncio
    async def test_re_adding_replaces(self, svc):
        await _save(svc)
        svc.add_custom_model("u1", {"vendor": "openai", "id": "ft:1", "display_name": "A"})
        svc.add_custom_model("u1", {"vendor": "openai", "id": "ft:1", "display_name": "B"})
        models = svc.custom_models("u1")
        assert [m.display_name for m in models] == ["B"]

    def test_add_without_credential_row(self, svc):
        with pytest.raises(NotFoundError):
            svc.add_custom_model("u1", {"vendor": "openai", "id": "ft:1"})

    def test_add_malformed(self, svc):
        with pytest.raises(ValidationError):
            svc.add_custom_model("u1", {"vendor": "openai"})

    @pytest.mark.asyncio
    async def test_remove(self, svc):
        await _save(svc)
        svc.add_custom_model("u1", {"vendor": "openai", "id": "ft:1"})
        assert svc.remove_custom_model("u1", "openai", "ft:1") is True
        assert svc.remove_custom_model("u1", "openai", "ft:1") is False
        assert svc.custom_models("u1") == []

    @pytest.mark.asyncio
    async def test_custom_models_survive_key_deletion(self, svc):
        await _save(svc)
        svc.add_custom_model("u1", {"vendor": "openai", "id": "ft:1"})
        svc.delete_credential("u1", "openai")
        assert [m.id for m in svc.custom_models("u1")] == ["ft:1"]
