"""Per-user vendor credential storage and validation.

Secrets are encrypted with AES-256-GCM (see credential_encryption) and
bound to their owner with the AAD ``user_id:vendor``, so a blob copied
onto another row fails to decrypt. Plaintext keys never leave this
service except through get_secret(), which the orchestrator calls right
before building a vendor adapter.

validation_status changes only in save_credential() and revalidate(),
the two explicit validation calls. Outcomes that say nothing about the
key itself (timeouts, network errors, rate limiting, vendor errors,
vendors without a probe) leave the stored status untouched.
"""

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.db.models import ProviderCredential, ValidationStatus, generate_uuid, utc_now_iso
from src.errors import AuthError, NotFoundError, ProviderError, ValidationError
from src.services.credential_encryption import (
    DecryptionError,
    decrypt_secret,
    encrypt_secret,
    get_or_create_key,
    mask_for_display,
)
from src.services.key_validator import KeyValidator, ValidationOutcome, ValidationResult
from src.services.model_catalog import ModelCatalog, ModelDescriptor, Vendor

logger = logging.getLogger(__name__)

_AUTHORITATIVE_OUTCOMES = {ValidationOutcome.VALID, ValidationOutcome.INVALID_KEY}


def parse_vendor(vendor: Vendor | str) -> Vendor:
    """Convert a vendor string to the enum.

    Raises:
        ValidationError: If the vendor is unknown.
    """
    if isinstance(vendor, Vendor):
        return vendor
    try:
        return Vendor(str(vendor).strip().lower())
    except ValueError as e:
        raise ValidationError(f"Unknown provider '{vendor}'") from e


class CredentialService:
    """CRUD and validation for ProviderCredential rows.

    Args:
        db: SQLAlchemy session.
        key_dir: Directory for the encryption key file (tests pass tmp_path).
        validator: Probe runner; defaults to a KeyValidator from config.
    """

    def __init__(
        self,
        db: Session,
        key_dir: str | None = None,
        validator: KeyValidator | None = None,
    ) -> None:
        self._db = db
        self._key = get_or_create_key(key_dir)
        self._validator = validator or KeyValidator()

    @staticmethod
    def _aad(user_id: str, vendor: Vendor) -> str:
        return f"{user_id}:{vendor.value}"

    def _get_row(self, user_id: str, vendor: Vendor) -> ProviderCredential | None:
        return self._db.scalar(
            select(ProviderCredential).where(
                ProviderCredential.user_id == user_id,
                ProviderCredential.vendor == vendor.value,
            )
        )

    def _decrypt_row(self, row: ProviderCredential) -> str:
        return decrypt_secret(
            row.encrypted_secret or "", self._key, aad=self._aad(row.user_id, Vendor(row.vendor))
        )

    def _row_to_view(self, row: ProviderCredential) -> dict[str, Any]:
        masked = None
        if row.encrypted_secret:
            try:
                masked = mask_for_display(self._decrypt_row(row))
            except DecryptionError:
                logger.warning(
                    "Stored key for user=%s vendor=%s cannot be decrypted", row.user_id, row.vendor
                )
                masked = mask_for_display(None)
        return {
            "vendor": row.vendor,
            "masked_key": masked,
            "has_key": bool(row.encrypted_secret),
            "is_enabled": row.is_enabled,
            "validation_status": row.validation_status,
            "last_validated_at": row.last_validated_at,
            "default_model": row.default_model,
            "custom_models": self._custom_model_dicts(row),
            "updated_at": row.updated_at,
        }

    @staticmethod
    def _custom_model_dicts(row: ProviderCredential) -> list[dict[str, Any]]:
        if not row.custom_models_json:
            return []
        try:
            data = json.loads(row.custom_models_json)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupted custom_models_json for %r", row)
            return []
        return data if isinstance(data, list) else []

    # --- Validation ---

    async def validate_key(self, vendor: Vendor | str, secret: str) -> ValidationResult:
        """Probe a key without storing anything.

        Unknown vendor strings resolve to a not_implemented outcome.
        """
        return await self._validator.validate(vendor, secret)

    async def save_credential(
        self,
        user_id: str,
        vendor: Vendor | str,
        secret: str,
        default_model: str | None = None,
    ) -> dict[str, Any]:
        """Validate a key and store it encrypted if the vendor accepts it.

        Returns:
            {"validation": ValidationResult dict, "credential": masked view}

        Raises:
            ValidationError: Empty secret or unknown vendor.
            AuthError: The vendor rejected the key.
            ProviderError: The probe could not reach a verdict (timeout,
                network, rate limit, vendor error).
        """
        vendor_enum = parse_vendor(vendor)
        secret = (secret or "").strip()
        if not secret:
            raise ValidationError("API key must not be empty")

        result = await self._validator.validate(vendor_enum, secret)
        if not result.valid:
            logger.info(
                "Rejected key for user=%s vendor=%s outcome=%s",
                user_id, vendor_enum.value, result.outcome.value,
            )
            if result.outcome == ValidationOutcome.INVALID_KEY:
                raise AuthError(
                    result.error or f"{vendor_enum.value} rejected the API key",
                    vendor=vendor_enum.value,
                )
            raise ProviderError(
                result.error or f"Could not validate key ({result.outcome.value})",
                vendor=vendor_enum.value,
            )

        now = utc_now_iso()
        encrypted = encrypt_secret(secret, self._key, aad=self._aad(user_id, vendor_enum))
        row = self._get_row(user_id, vendor_enum)
        if row is None:
            row = ProviderCredential(
                id=generate_uuid(),
                user_id=user_id,
                vendor=vendor_enum.value,
                created_at=now,
            )
            self._db.add(row)
        row.encrypted_secret = encrypted
        row.is_enabled = True
        row.validation_status = ValidationStatus.valid.value
        row.last_validated_at = now
        row.updated_at = now
        if default_model:
            row.default_model = default_model
        self._db.commit()

        logger.info("Saved key for user=%s vendor=%s", user_id, vendor_enum.value)
        return {"validation": result.to_dict(), "credential": self._row_to_view(row)}

    async def revalidate(self, user_id: str, vendor: Vendor | str) -> ValidationResult:
        """Re-probe a stored key and record the verdict.

        Raises:
            NotFoundError: If no key is stored for the vendor.
        """
        vendor_enum = parse_vendor(vendor)
        row = self._get_row(user_id, vendor_enum)
        if row is None or not row.encrypted_secret:
            raise NotFoundError("Credential", vendor_enum.value)

        try:
            secret = self._decrypt_row(row)
        except DecryptionError as e:
            logger.warning("Revalidation could not decrypt key vendor=%s: %s", vendor_enum.value, e)
            secret = ""

        result = await self._validator.validate(vendor_enum, secret)
        if result.outcome in _AUTHORITATIVE_OUTCOMES or not secret:
            row.validation_status = (
                ValidationStatus.valid.value if result.valid else ValidationStatus.invalid.value
            )
            row.last_validated_at = utc_now_iso()
            row.updated_at = row.last_validated_at
            self._db.commit()
        return result

    # --- Lookup ---

    def get_secret(self, user_id: str, vendor: Vendor | str) -> str:
        """Return the decrypted key for a usable credential.

        Raises:
            AuthError: Missing, disabled, unvalidated or undecryptable key.
        """
        vendor_enum = parse_vendor(vendor)
        row = self._get_row(user_id, vendor_enum)
        if row is None or not row.encrypted_secret:
            raise AuthError(
                f"No API key configured for {vendor_enum.value}", vendor=vendor_enum.value
            )
        if not row.is_enabled:
            raise AuthError(f"Provider {vendor_enum.value} is disabled", vendor=vendor_enum.value)
        if row.validation_status != ValidationStatus.valid.value:
            raise AuthError(
                f"API key for {vendor_enum.value} is not valid (status: {row.validation_status})",
                vendor=vendor_enum.value,
            )
        try:
            return self._decrypt_row(row)
        except DecryptionError as e:
            raise AuthError(
                f"Stored API key for {vendor_enum.value} cannot be decrypted; save it again",
                vendor=vendor_enum.value,
            ) from e

    def list_credentials(self, user_id: str) -> list[dict[str, Any]]:
        """Masked views of all of a user's credentials."""
        rows = self._db.scalars(
            select(ProviderCredential)
            .where(ProviderCredential.user_id == user_id)
            .order_by(ProviderCredential.vendor)
        )
        return [self._row_to_view(row) for row in rows]

    def available_vendors(self, user_id: str) -> list[Vendor]:
        """Vendors the user can generate with: enabled, keyed and valid."""
        rows = self._db.scalars(
            select(ProviderCredential).where(
                ProviderCredential.user_id == user_id,
                ProviderCredential.is_enabled == True,  # noqa: E712
                ProviderCredential.validation_status == ValidationStatus.valid.value,
                ProviderCredential.encrypted_secret.is_not(None),
            )
        )
        vendors = []
        for row in rows:
            try:
                vendors.append(Vendor(row.vendor))
            except ValueError:
                logger.warning("Ignoring credential with unknown vendor %r", row.vendor)
        return vendors

    # --- Mutation ---

    def delete_credential(self, user_id: str, vendor: Vendor | str) -> bool:
        """Forget a key. The row stays so custom models survive.

        Returns:
            True if a credential row existed.
        """
        row = self._get_row(user_id, parse_vendor(vendor))
        if row is None:
            return False
        row.encrypted_secret = None
        row.is_enabled = False
        row.updated_at = utc_now_iso()
        self._db.commit()
        logger.info("Deleted key for user=%s vendor=%s", user_id, row.vendor)
        return True

    def _require_row(self, user_id: str, vendor: Vendor) -> ProviderCredential:
        row = self._get_row(user_id, vendor)
        if row is None:
            raise NotFoundError("Credential", vendor.value)
        return row

    def set_enabled(self, user_id: str, vendor: Vendor | str, enabled: bool) -> None:
        row = self._require_row(user_id, parse_vendor(vendor))
        row.is_enabled = enabled
        row.updated_at = utc_now_iso()
        self._db.commit()

    def set_default_model(self, user_id: str, vendor: Vendor | str, model_id: str | None) -> None:
        row = self._require_row(user_id, parse_vendor(vendor))
        row.default_model = model_id
        row.updated_at = utc_now_iso()
        self._db.commit()

    def add_custom_model(self, user_id: str, model: ModelDescriptor | dict[str, Any]) -> ModelDescriptor:
        """Store a user-defined model under its vendor's credential row.

        Raises:
            ValidationError: Malformed descriptor.
            NotFoundError: No credential row for the model's vendor.
        """
        if isinstance(model, dict):
            try:
                model = ModelDescriptor.from_dict(model)
            except (ValueError, TypeError, ArithmeticError) as e:
                raise ValidationError(f"Invalid custom model: {e}") from e
        row = self._require_row(user_id, model.vendor)
        models = [m for m in self._custom_model_dicts(row) if m.get("id") != model.id]
        models.append(model.to_dict())
        row.custom_models_json = json.dumps(models)
        row.updated_at = utc_now_iso()
        self._db.commit()
        return model

    def remove_custom_model(self, user_id: str, vendor: Vendor | str, model_id: str) -> bool:
        row = self._get_row(user_id, parse_vendor(vendor))
        if row is None:
            return False
        models = self._custom_model_dicts(row)
        remaining = [m for m in models if m.get("id") != model_id]
        if len(remaining) == len(models):
            return False
        row.custom_models_json = json.dumps(remaining)
        row.updated_at = utc_now_iso()
        self._db.commit()
        return True

    def custom_models(self, user_id: str) -> list[ModelDescriptor]:
        rows = self._db.scalars(
            select(ProviderCredential).where(ProviderCredential.user_id == user_id)
        )
        descriptors = []
        for row in rows:
            for data in self._custom_model_dicts(row):
                try:
                    descriptors.append(ModelDescriptor.from_dict(data))
                except (ValueError, TypeError, ArithmeticError):
                    logger.warning("Skipping malformed custom model on %r", row)
        return descriptors

    def build_catalog(self, user_id: str, base: ModelCatalog | None = None) -> ModelCatalog:
        """The built-in catalog with the user's custom models layered on."""
        return (base or ModelCatalog()).with_custom_models(self.custom_models(user_id))
