"""
Tests for the business-rule layer: workflow, security and compliance
validators and the operation dispatch table.
"""
from datetime import datetime, timedelta

import pytest

from signflow.config import Settings
from signflow.errors import (
    ComplianceViolation,
    InvalidExpiration,
    InvalidStateTransition,
    SecurityViolation,
    WorkflowTimeout,
    WorkflowViolation,
)
from signflow.models.audit import AuditEvent, AuditEventType
from signflow.models.domain import Envelope, InvitationToken, Signature, Signer
from signflow.models.enums import EnvelopeStatus, SignerStatus, SigningOrder
from signflow.rules import compliance, security, workflow
from signflow.rules.dispatch import RULES, Operation, RuleContext, run_rules
from signflow.rules.workflow import SignerInput
from signflow.services.ports import CertificateInfo, NetworkContext

NOW = datetime(2025, 3, 3, 9, 0, 0)
SHA256_HEX = "a" * 64


def envelope(status=EnvelopeStatus.SENT, completed_at=None):
    return Envelope(id="env1", owner_id="user_owner", owner_email="owner@example.com",
                    document_key="documents/doc.pdf", signing_order=SigningOrder.INVITEES_FIRST,
                    status=status, completed_at=completed_at)


def signer(email="alice@example.com", status=SignerStatus.PENDING, signer_id="s1"):
    return Signer(id=signer_id, envelope_id="env1", email=email, order=1, status=status, created_at=NOW)


def signature(**overrides):
    fields = dict(id="sig1", envelope_id="env1", signer_id="s1", document_hash=SHA256_HEX,
                  signature_hash="b" * 64, storage_key="evidence/env1/s1/sig1.json",
                  algorithm="HMAC_SHA256", key_id="k1", signed_at=NOW)
    fields.update(overrides)
    return Signature(**fields)


def certificate(**overrides):
    fields = dict(issuer="Example CA", subject="signflow", valid_from=NOW - timedelta(days=1),
                  valid_to=NOW + timedelta(days=1))
    fields.update(overrides)
    return CertificateInfo(**fields)


class TestWorkflowRules:
    def test_only_owner(self):
        workflow.validate_owner(envelope(), "user_owner", "invite")
        with pytest.raises(SecurityViolation):
            workflow.validate_owner(envelope(), "user_other", "invite")
        with pytest.raises(SecurityViolation):
            workflow.validate_owner(envelope(), None, "invite")

    @pytest.mark.parametrize("operation, status", [
        ("invite", EnvelopeStatus.COMPLETED),
        ("remind", EnvelopeStatus.DRAFT),
        ("decline", EnvelopeStatus.READY_FOR_SIGNATURE),
        ("finalize", EnvelopeStatus.IN_PROGRESS),
        ("restart", EnvelopeStatus.EXPIRED),
        ("delete", EnvelopeStatus.SENT),
    ])
    def test_operation_refused_in_status(self, operation, status):
        with pytest.raises(InvalidStateTransition) as exc:
            workflow.validate_operation_status(envelope(status), operation)
        assert exc.value.context["operation"] == operation

    def test_reminder_cap(self):
        with pytest.raises(WorkflowViolation):
            workflow.validate_reminder(signer(), 3, None, NOW, 3, 24)

    def test_reminder_cooldown(self):
        last = NOW - timedelta(hours=23)
        with pytest.raises(WorkflowViolation) as exc:
            workflow.validate_reminder(signer(), 1, last, NOW, 3, 24)
        assert exc.value.context["next_allowed_at"] == (last + timedelta(hours=24)).isoformat()

        workflow.validate_reminder(signer(), 1, NOW - timedelta(hours=24), NOW, 3, 24)

    def test_sign_inside_window(self):
        workflow.validate_processing_window("sign", NOW - timedelta(minutes=4), NOW, 300_000)

    def test_sign_after_window_times_out(self):
        with pytest.raises(WorkflowTimeout):
            workflow.validate_processing_window("sign", NOW - timedelta(minutes=6), NOW, 300_000)

    def test_cleanup_only_after_window(self):
        with pytest.raises(WorkflowViolation):
            workflow.validate_processing_window("decline_cleanup", NOW - timedelta(minutes=4), NOW, 300_000)
        workflow.validate_processing_window("decline_cleanup", NOW - timedelta(minutes=5), NOW, 300_000)

    def test_cleanup_needs_a_delivery(self):
        with pytest.raises(WorkflowViolation):
            workflow.validate_processing_window("decline_cleanup", None, NOW, 300_000)

    @pytest.mark.parametrize("given, text", [(False, "I agree"), (True, ""), (True, "   "), (True, None)])
    def test_consent_required(self, given, text):
        with pytest.raises(WorkflowViolation):
            workflow.validate_consent(signer(), given, text)


class TestNewEnvelope:
    def test_valid(self):
        workflow.validate_new_envelope(
            "owner@example.com",
            [SignerInput("alice@example.com", order=1), SignerInput("owner@example.com", order=2)],
            NOW + timedelta(days=1), NOW,
        )

    def test_needs_a_signer(self):
        with pytest.raises(WorkflowViolation):
            workflow.validate_new_envelope("owner@example.com", [], None, NOW)

    def test_expiry_in_the_past(self):
        with pytest.raises(InvalidExpiration):
            workflow.validate_new_envelope("owner@example.com", [SignerInput("alice@example.com")], NOW, NOW)

    @pytest.mark.parametrize("entries", [
        [SignerInput("not-an-email")],
        [SignerInput("alice@example.com", order=0)],
        [SignerInput("Owner@example.com", is_external=True)],
        [SignerInput("alice@example.com", order=1), SignerInput("ALICE@example.com", order=2)],
        [SignerInput("alice@example.com", order=1), SignerInput("bob@example.com", order=1)],
    ])
    def test_refused_compositions(self, entries):
        with pytest.raises(WorkflowViolation):
            workflow.validate_new_envelope("owner@example.com", entries, None, NOW)

    def test_duplicates_allowed_when_uniqueness_is_off(self):
        entries = [SignerInput("alice@example.com", order=1), SignerInput("bob@example.com", order=1)]
        workflow.validate_new_envelope("owner@example.com", entries, None, NOW, require_unique=False)


class TestSecurityRules:
    def test_hash_format(self):
        security.validate_hash_format(SHA256_HEX, "HMAC_SHA256")
        security.validate_hash_format("c" * 96, "SHA384_RSA")
        for bad in (None, "A" * 64, "a" * 63, "g" * 64):
            with pytest.raises(SecurityViolation):
                security.validate_hash_format(bad, "HMAC_SHA256")

    def test_unknown_algorithm(self):
        with pytest.raises(SecurityViolation):
            security.digest_for("MD5")

    def test_certificate(self):
        security.validate_certificate(None, NOW)
        security.validate_certificate(certificate(), NOW)
        with pytest.raises(SecurityViolation):
            security.validate_certificate(certificate(issuer=" "), NOW)
        with pytest.raises(SecurityViolation):
            security.validate_certificate(certificate(valid_to=NOW - timedelta(hours=1)), NOW)
        with pytest.raises(SecurityViolation):
            security.validate_certificate(
                certificate(valid_from=NOW + timedelta(days=2), valid_to=NOW + timedelta(days=1)), NOW,
            )

    def test_timestamp(self):
        floor = datetime(2020, 1, 1)
        security.validate_timestamp(NOW - timedelta(hours=1), NOW, 24, floor, 300)
        security.validate_timestamp(NOW + timedelta(seconds=200), NOW, 24, floor, 300)
        for bad in (None, NOW + timedelta(minutes=10), datetime(2019, 12, 31), NOW - timedelta(hours=25)):
            with pytest.raises(SecurityViolation):
                security.validate_timestamp(bad, NOW, 24, floor, 300)

    def test_key_id(self):
        security.validate_key_id("k1", ["k1"])
        security.validate_key_id("anything", [])
        with pytest.raises(SecurityViolation):
            security.validate_key_id("k2", ["k1"])
        with pytest.raises(SecurityViolation):
            security.validate_key_id(None, ["k1"])

    @pytest.mark.parametrize("key", ["", "/evidence/x.json", "evidence/../secrets", "documents/x.pdf"])
    def test_storage_key_refused(self, key):
        with pytest.raises(SecurityViolation):
            security.validate_storage_key(key, ["evidence/", "consent/"])

    def test_caller_access(self):
        env = envelope()
        signers = [signer("Alice@Example.com")]
        security.validate_caller_access(env, signers, "user_owner", None, [])
        security.validate_caller_access(env, signers, "auditor", None, ["auditor"])
        security.validate_caller_access(env, signers, None, "alice@example.com", [])
        with pytest.raises(SecurityViolation):
            security.validate_caller_access(env, signers, None, "alice@example.com", [], include_signers=False)
        with pytest.raises(SecurityViolation):
            security.validate_caller_access(env, signers, "user_other", "mallory@example.com", [])

    def test_network_context(self):
        security.validate_network_context(None)
        security.validate_network_context(NetworkContext("2001:db8::1", "Mozilla/5.0", "T1"))
        for bad in (
            NetworkContext(ip_address="999.1.1.1"),
            NetworkContext(user_agent="x" * 501),
            NetworkContext(country="FRA"),
            NetworkContext(country="fr"),
        ):
            with pytest.raises(SecurityViolation):
                security.validate_network_context(bad)

    def test_document_hash(self):
        security.validate_document_hash(None, SHA256_HEX)
        security.validate_document_hash(SHA256_HEX.upper(), SHA256_HEX)
        with pytest.raises(SecurityViolation):
            security.validate_document_hash("b" * 64, SHA256_HEX)

    def test_token_owner(self):
        token = InvitationToken(id="t1", envelope_id="env1", signer_id="s1")
        security.validate_token_owner(token, signer())
        with pytest.raises(SecurityViolation):
            security.validate_token_owner(token, signer(signer_id="s2"))


class TestComplianceRules:
    ALL = list(compliance.ALGORITHM_SECURITY_LEVELS)

    def test_algorithm_allowed_list(self):
        with pytest.raises(ComplianceViolation):
            compliance.validate_algorithm("SHA256_RSA", ["HMAC_SHA256"], "LOW", "BASIC")

    def test_algorithm_minimum_level(self):
        compliance.validate_algorithm("SHA256_RSA", self.ALL, "MEDIUM", "BASIC")
        with pytest.raises(ComplianceViolation):
            compliance.validate_algorithm("HMAC_SHA256", self.ALL, "MEDIUM", "BASIC")

    @pytest.mark.parametrize("algorithm, level, ok", [
        ("HMAC_SHA256", "BASIC", True),
        ("HMAC_SHA256", "ADVANCED", False),
        ("ECDSA_P256_SHA256", "ADVANCED", True),
        ("ECDSA_P256_SHA256", "HIGH_SECURITY", False),
        ("SHA512_RSA", "HIGH_SECURITY", True),
    ])
    def test_algorithm_compliance_level(self, algorithm, level, ok):
        if ok:
            compliance.validate_algorithm(algorithm, self.ALL, "LOW", level)
        else:
            with pytest.raises(ComplianceViolation):
                compliance.validate_algorithm(algorithm, self.ALL, "LOW", level)

    def test_legal_validity(self):
        compliance.validate_legal_validity(signature(), NOW + timedelta(days=365), 365)
        with pytest.raises(ComplianceViolation):
            compliance.validate_legal_validity(signature(), NOW + timedelta(days=366), 365)
        with pytest.raises(ComplianceViolation):
            compliance.validate_legal_validity(
                signature(certificate_valid_to=NOW - timedelta(seconds=1)), NOW, 365,
            )

    def test_certificate_compliance(self):
        compliance.validate_certificate_compliance(signature(), [], "ADVANCED")
        with pytest.raises(ComplianceViolation):
            compliance.validate_certificate_compliance(signature(), [], "HIGH_SECURITY")

        signed = signature(certificate_issuer="Example CA", certificate_subject="signflow")
        compliance.validate_certificate_compliance(signed, ["Example CA"], "HIGH_SECURITY")
        with pytest.raises(ComplianceViolation):
            compliance.validate_certificate_compliance(signed, ["Other CA"], "BASIC")

    def test_retention_deadline(self):
        assert compliance.retention_deadline(NOW, 7, "YEARS") == NOW + timedelta(days=7 * 365)
        assert compliance.retention_deadline(NOW, 2, "MONTHS") == NOW + timedelta(days=60)

    def test_retention_policy(self):
        past = NOW + timedelta(days=31)
        compliance.validate_retention_policy(None, NOW, 1, "MONTHS", True, False)
        compliance.validate_retention_policy(NOW, NOW + timedelta(days=30), 1, "MONTHS", True, False)
        compliance.validate_retention_policy(NOW, past, 1, "MONTHS", False, False)
        with pytest.raises(ComplianceViolation, match="archived"):
            compliance.validate_retention_policy(NOW, past, 1, "MONTHS", True, False)
        with pytest.raises(ComplianceViolation, match="deleted"):
            compliance.validate_retention_policy(NOW, past, 1, "MONTHS", True, True)
        with pytest.raises(ComplianceViolation):
            compliance.validate_retention_policy(NOW, NOW, 0, "DAYS", True, False)

    def test_access_logging(self):
        alice = signer(status=SignerStatus.SIGNED)
        events = [
            AuditEvent(event_type=AuditEventType.ENVELOPE_CREATED, entity_type="Envelope", entity_id="env1"),
            AuditEvent(event_type=AuditEventType.ENVELOPE_SENT, entity_type="Envelope", entity_id="env1"),
        ]
        assert compliance.missing_access_log_entries(envelope(), [alice], events) == ["signer_signed:s1"]

        events.append(AuditEvent(event_type=AuditEventType.SIGNER_SIGNED, entity_type="Signer",
                                 entity_id="s1", signer_id="s1"))
        compliance.validate_access_logging(envelope(), [alice], events)
        with pytest.raises(ComplianceViolation):
            compliance.validate_access_logging(envelope(), [alice], events[1:])

    def test_tamper_evidence(self):
        compliance.validate_tamper_evidence(signature(), NOW)
        for bad in (
            signature(algorithm="MD5"),
            signature(document_hash="a" * 96),
            signature(signature_hash="xyz"),
            signature(signed_at=NOW + timedelta(minutes=1)),
        ):
            with pytest.raises(ComplianceViolation):
                compliance.validate_tamper_evidence(bad, NOW)
        compliance.validate_tamper_evidence(signature(signed_at=NOW + timedelta(minutes=1)), NOW, 300)


class TestDispatch:
    def test_every_operation_has_rules(self):
        assert set(RULES) == set(Operation)
        assert all(RULES[op] for op in Operation)

    def test_first_failure_propagates(self):
        # Non-owner delete of a SENT envelope: the owner check runs before the status check
        ctx = RuleContext(settings=Settings(), now=NOW, envelope=envelope(EnvelopeStatus.SENT),
                          actor_id="user_other")
        with pytest.raises(SecurityViolation):
            run_rules(Operation.DELETE, ctx)

        ctx.actor_id = "user_owner"
        with pytest.raises(InvalidStateTransition):
            run_rules(Operation.DELETE, ctx)

    def test_delete_refused_while_evidence_exists(self):
        ctx = RuleContext(settings=Settings(), now=NOW, envelope=envelope(EnvelopeStatus.DECLINED),
                          actor_id="user_owner", signatures=[signature()])
        with pytest.raises(ComplianceViolation):
            run_rules(Operation.DELETE, ctx)

        ctx.signatures = ()
        run_rules(Operation.DELETE, ctx)

    def test_expire_requires_due_date(self):
        env = envelope(EnvelopeStatus.SENT)
        env.expires_at = NOW + timedelta(hours=1)
        with pytest.raises(WorkflowViolation):
            run_rules(Operation.EXPIRE, RuleContext(settings=Settings(), now=NOW, envelope=env))
        run_rules(Operation.EXPIRE, RuleContext(settings=Settings(), now=NOW + timedelta(hours=1), envelope=env))

    def test_remind_without_signer_checks_envelope_only(self):
        ctx = RuleContext(settings=Settings(), now=NOW, envelope=envelope(EnvelopeStatus.IN_PROGRESS),
                          actor_id="user_owner", reminders_sent=99)
        run_rules(Operation.REMIND, ctx)
