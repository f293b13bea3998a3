import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from webauthn import (
    generate_registration_options,
    verify_registration_response,
    generate_authentication_options,
    verify_authentication_response,
    options_to_json,
    base64url_to_bytes,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidJSONStructure,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from ..models.db_models import Student, WebAuthnCredential

logger = logging.getLogger(__name__)

_KNOWN_TRANSPORTS = {transport.value for transport in AuthenticatorTransport}


class VerificationError(Exception):
    """Raised when a WebAuthn ceremony response is rejected."""
    pass


@dataclass
class AssertionResult:
    verified: bool
    new_counter: Optional[int] = None
    reason: Optional[str] = None


def _descriptors(credentials: List[WebAuthnCredential]) -> List[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(cred.credential_id),
            transports=[AuthenticatorTransport(t) for t in cred.transports if t in _KNOWN_TRANSPORTS],
        )
        for cred in credentials
    ]


def assertion_credential_id(assertion: Dict[str, Any]) -> Optional[str]:
    """The base64url credential id a browser assertion refers to."""
    credential_id = assertion.get("id") or assertion.get("rawId")
    return str(credential_id) if credential_id else None


class WebAuthnVerifier:
    """
    Thin wrapper around the py_webauthn ceremonies, bound to one relying party.
    Challenges are returned as base64url strings so they can be kept in Redis.
    """

    def __init__(self, rp_id: str, rp_name: str, origin: str, timeout_ms: int = 60000):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout_ms = timeout_ms

    # --- Registration ---

    def registration_options(self, student: Student, existing: List[WebAuthnCredential]) -> Tuple[Dict[str, Any], str]:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=str(student.student_id).encode(),
            user_name=student.roll_no,
            user_display_name=student.full_name,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.DISCOURAGED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=_descriptors(existing),
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def verify_registration(self, student_id: UUID, credential: Dict[str, Any], expected_challenge: str) -> WebAuthnCredential:
        try:
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=True,
            )
        except (InvalidRegistrationResponse, InvalidJSONStructure) as e:
            raise VerificationError(f"Registration verification failed: {e}") from e

        transports = [
            t for t in (credential.get("response", {}).get("transports") or [])
            if t in _KNOWN_TRANSPORTS
        ]
        return WebAuthnCredential(
            credential_id=bytes_to_base64url(verification.credential_id),
            student_id=student_id,
            public_key=bytes_to_base64url(verification.credential_public_key),
            counter=verification.sign_count,
            device_type="internal" if "internal" in transports else "external",
            transports=transports,
        )

    # --- Authentication ---

    def authentication_options(self, credentials: List[WebAuthnCredential]) -> Tuple[Dict[str, Any], str]:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=_descriptors(credentials),
            user_verification=UserVerificationRequirement.REQUIRED,
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def verify_assertion(self, stored: WebAuthnCredential, assertion: Dict[str, Any], expected_challenge: str) -> AssertionResult:
        """
        Verifies an authentication assertion against the stored credential.

        The returned counter must be strictly greater than the stored one. A
        counter that did not move is reported like any other verification
        failure; it is not singled out as a cloned-credential signal.
        """
        try:
            verification = verify_authentication_response(
                credential=assertion,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(stored.public_key),
                credential_current_sign_count=stored.counter,
                require_user_verification=True,
            )
        except (InvalidAuthenticationResponse, InvalidJSONStructure) as e:
            logger.info(f"Assertion for credential {stored.credential_id} rejected: {e}")
            return AssertionResult(verified=False, reason="Assertion verification failed.")

        if verification.new_sign_count <= stored.counter:
            logger.warning(
                f"Credential {stored.credential_id} returned counter {verification.new_sign_count} "
                f"(stored {stored.counter}); rejecting."
            )
            return AssertionResult(verified=False, reason="Signature counter did not increase.")

        return AssertionResult(verified=True, new_counter=verification.new_sign_count)
