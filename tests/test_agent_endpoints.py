"""
Tests for the agent endpoint helpers: name check, filing, documents, payment and
certificate request/response shaping.
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import MagicMock

from formation.agents import certificate, document_filler, filing, name_check, payment
from formation.agents.executor import AgentExecutor
from formation.agents.registry import AGENT_NAMES, AgentRegistry, create_executor
from formation.agents.types import AgentError, NAME_CHECK_RETRY_POLICY, RequestOptions


@pytest.fixture
def executor():
    return MagicMock(spec=AgentExecutor)


def company(company_type="LLC", **overrides):
    data = {
        "company_name": "Acme Widgets LLC" if company_type == "LLC" else "Acme Widgets Inc.",
        "company_type": company_type,
        "registered_agent": {
            "name": "Delaware Agents Co",
            "address": {"street1": "1 Main St", "city": "Dover", "state": "DE", "zip_code": "19901"},
        },
        "shareholders": [{
            "first_name": "Jane",
            "last_name": "Doe",
            "ssn": "123-45-6789",
            "address": {"street1": "5 Elm St", "city": "Austin", "state": "TX", "zip_code": "73301"},
        }],
    }
    data.update(overrides)
    return data


def certificate_response(expires_in=timedelta(minutes=60), **overrides):
    data = {
        "success": True,
        "certificateId": "cert-123",
        "downloadUrl": "https://certs.example.com/cert-123.pdf?signature=abc",
        "s3Uri": "s3://certs/cert-123.pdf",
        "expiresAt": (datetime.now(timezone.utc) + expires_in).isoformat(),
        "metadata": {
            "companyName": "Acme Widgets LLC",
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "fileSize": 48213,
            "fileHash": "9f86d081884c7d65",
        },
    }
    data.update(overrides)
    return data


class TestNameCheck:
    """Test Delaware name availability helpers."""

    @pytest.mark.parametrize("name, base", [
        ("Acme Widgets LLC", "Acme Widgets"),
        ("Acme Widgets Limited Liability Company", "Acme Widgets"),
        ("Acme Inc.", "Acme"),
        ("Acme", "Acme"),
    ])
    def test_extract_base_name(self, name, base):
        """One trailing entity ending is removed."""
        assert name_check.extract_base_name(name) == base

    def test_validate_company_name(self):
        """Names need an ending matching their entity type and no special characters."""
        assert name_check.validate_company_name("Acme Widgets LLC", "LLC") == []
        errors = name_check.validate_company_name("A@", "C-Corp")
        assert any("at least" in e for e in errors)
        assert any("invalid characters" in e for e in errors)
        assert any("Inc." in e for e in errors)

    def test_unknown_company_type(self):
        """Unsupported company types raise ValueError."""
        with pytest.raises(ValueError):
            name_check.delaware_entity_type("Co-op")

    def test_available(self, executor):
        """S-Corp names are checked as Delaware corporations."""
        executor.post.return_value = {"status": "available", "companyName": "Acme Inc."}

        result = name_check.check_availability(executor, "Acme Inc.", "S-Corp")

        assert result.available is True
        assert result.suggestions == []
        path, body = executor.post.call_args.args
        assert path == name_check.CHECK_PATH
        assert body == {"baseName": "Acme", "entityType": "C", "entityEnding": "Inc."}

    def test_taken_has_suggestions(self, executor):
        """Taken names come back with alternatives and reasons."""
        executor.post.return_value = {"status": "taken", "rejectionReasons": ["Name exists"]}

        result = name_check.check_availability(executor, "Acme LLC", "LLC")

        assert result.available is False
        assert result.reason == "Name exists"
        assert "Acme Ventures" in result.suggestions

    def test_missing_status(self, executor):
        """A response without a status is rejected."""
        executor.post.return_value = {}
        with pytest.raises(AgentError) as exc_info:
            name_check.check_availability(executor, "Acme LLC", "LLC")
        assert exc_info.value.code == "INVALID_RESPONSE"


class TestFiling:
    """Test filing endpoint helpers."""

    def test_submit_sets_key_and_timeout(self, executor):
        """Submissions get a filing idempotency key and a long timeout."""
        filing.submit_filing(executor, {"sessionId": "session-1"})
        options = executor.post.call_args.args[2]
        assert options.idempotency_key.startswith("filing-session-1-")
        assert options.timeout == filing.SUBMIT_TIMEOUT_SEC

    def test_caller_options_win(self, executor):
        """Caller-supplied values are not overwritten by endpoint defaults."""
        filing.submit_filing(executor, {"sessionId": "s"}, RequestOptions(idempotency_key="mine"))
        assert executor.post.call_args.args[2].idempotency_key == "mine"

    def test_fee_quote_not_retried(self, executor):
        """Fee calculation is a single attempt."""
        filing.calculate_fees(executor, "DE", "LLC")
        assert executor.post.call_args.args[2].skip_retry is True

    def test_ids_are_quoted(self, executor):
        """Ids are escaped in URL paths."""
        executor.get.return_value = {"status": "accepted"}
        assert filing.is_filing_complete(executor, "a/b") is True
        assert executor.get.call_args.args[0] == "/api/v1/filings/a%2Fb"


class TestDocuments:
    """Test document generation helpers."""

    def test_required_documents(self):
        """Corporations need bylaws and stock certificates; LLCs an operating agreement."""
        assert document_filler.DocumentType.OPERATING_AGREEMENT in document_filler.get_required_documents("LLC")
        assert document_filler.DocumentType.BYLAWS in document_filler.get_required_documents("C-Corp")
        assert document_filler.get_required_documents("Unknown") == []

    def test_generate_all_batches(self, executor):
        """All required documents are requested in one batch."""
        executor.post.return_value = [{"documentId": "d1"}]
        document_filler.generate_all_documents(executor, "session-1", company("C-Corp"))
        path, body = executor.post.call_args.args[:2]
        assert path == "/api/v1/documents/generate-batch"
        assert [r["documentType"] for r in body["requests"]] == ["articles", "bylaws", "stock-certificates"]

    def test_download_url_required(self, executor):
        """A download-url response without a url is invalid."""
        executor.post.return_value = {}
        with pytest.raises(AgentError):
            document_filler.get_download_url(executor, "doc-1")


class TestPayment:
    """Test payment envelope unwrapping."""

    def test_process_payment(self, executor):
        """Successful responses are unwrapped and carry a payment idempotency key."""
        executor.post.return_value = {"success": True, "data": {"paymentId": "pay-1"}}
        assert payment.process_payment(executor, {"amount": 100}) == {"paymentId": "pay-1"}
        assert executor.post.call_args.args[2].idempotency_key.startswith("payment-")

    def test_declined(self, executor):
        """success=false becomes a non-retryable AgentError with the API code."""
        executor.post.return_value = {"success": False, "error": {"code": "CARD_DECLINED", "message": "Declined"}}
        with pytest.raises(AgentError) as exc_info:
            payment.process_payment(executor, {"amount": 100})
        assert exc_info.value.code == "CARD_DECLINED"
        assert exc_info.value.retryable is False

    def test_malformed(self, executor):
        """Responses without the envelope are invalid."""
        executor.get.return_value = ["not", "an", "envelope"]
        with pytest.raises(AgentError) as exc_info:
            payment.get_payment_status(executor, "pay-1")
        assert exc_info.value.code == "INVALID_RESPONSE"


class TestCertificateRequests:
    """Test certificate request building."""

    def test_llc_request(self):
        """LLC requests carry only name and registered agent, in camelCase."""
        request = certificate.build_certificate_request(company("LLC"))
        payload = request.model_dump(by_alias=True, mode="json")

        assert payload["companyType"] == "llc"
        assert payload["companyName"] == "Acme Widgets LLC"
        assert payload["registeredAgent"]["address"] == {
            "street": "1 Main St", "city": "Dover", "state": "DE", "zipCode": "19901"
        }
        assert "authorizedShares" not in payload
        assert "incorporator" not in payload

    def test_corporation_defaults(self):
        """Corporations get default shares, par value, county and incorporator."""
        request = certificate.build_certificate_request(company("C-Corp"))
        payload = request.model_dump(by_alias=True, mode="json")

        assert payload["companyType"] == "c-corp"
        assert payload["authorizedShares"] == 10_000_000
        assert payload["parValue"] == "0.00001"
        assert payload["registeredAgent"]["address"]["county"] == "Sussex"
        assert payload["incorporator"]["name"] == "Jane Doe"
        assert payload["incorporator"]["address"]["city"] == "Austin"

    def test_s_corp_variant(self):
        """S-Corps use the corporation variant."""
        request = certificate.build_certificate_request(company("S-Corp", authorized_shares=5000))
        assert isinstance(request, certificate.CorporationCertificateRequest)
        assert request.company_type == "s-corp"
        assert request.authorized_shares == 5000

    @pytest.mark.parametrize("value, expected", [(1e-05, "0.00001"), ("0.10", "0.1"), (100, "100")])
    def test_par_value_plain_decimal(self, value, expected):
        """Par values never use scientific notation."""
        assert certificate.format_par_value(value) == expected

    def test_invalid_par_value(self):
        """Negative or non-numeric par values are rejected."""
        with pytest.raises(ValueError):
            certificate.format_par_value("-1")
        with pytest.raises(ValueError):
            certificate.format_par_value("abc")

    def test_missing_data(self):
        """Missing registered agent and shareholders are reported together."""
        data = company("LLC", registered_agent=None, shareholders=[])
        with pytest.raises(certificate.CertificateValidationError) as exc_info:
            certificate.build_certificate_request(data)
        message = str(exc_info.value)
        assert "Registered agent information is required" in message
        assert "At least one shareholder/member is required" in message

    def test_parse_wire_request(self):
        """Wire-format requests are dispatched on companyType."""
        payload = certificate.build_certificate_request(company("C-Corp")).model_dump(by_alias=True, mode="json")
        parsed = certificate.parse_certificate_request(payload)
        assert isinstance(parsed, certificate.CorporationCertificateRequest)

        with pytest.raises(certificate.CertificateValidationError):
            certificate.parse_certificate_request({"companyType": "partnership"})


class TestCertificateResponses:
    """Test certificate response validation and expiry helpers."""

    def test_generate(self, executor):
        """The request is posted in wire format and the response validated."""
        executor.post.return_value = certificate_response()
        request = certificate.build_certificate_request(company("LLC"))

        response = certificate.generate_certificate(executor, request)

        assert response.certificate_id == "cert-123"
        assert response.expires_at.tzinfo is not None
        path, body, options = executor.post.call_args.args
        assert path == certificate.CERTIFICATES_PATH
        assert body["companyType"] == "llc"
        assert options.idempotency_key.startswith("certificate-")

    @pytest.mark.parametrize("overrides", [
        {"success": False},
        {"certificateId": ""},
        {"metadata": {"companyName": "x", "generatedAt": "y", "fileSize": "big", "fileHash": "z"}},
    ])
    def test_invalid_response(self, overrides):
        """Malformed responses raise INVALID_RESPONSE."""
        with pytest.raises(AgentError) as exc_info:
            certificate.parse_certificate_response(certificate_response(**overrides))
        assert exc_info.value.code == "INVALID_RESPONSE"

    def test_minutes_remaining(self):
        """Remaining minutes are floored and never negative."""
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert certificate.minutes_remaining(now + timedelta(minutes=59, seconds=59), now) == 59
        assert certificate.minutes_remaining(now - timedelta(minutes=5), now) == 0
        assert certificate.is_url_expired(now, now) is True
        assert certificate.is_url_expired(now + timedelta(seconds=1), now) is False

    def test_session_data(self):
        """Approved data serializes to JSON-safe snake_case."""
        response = certificate.parse_certificate_response(certificate_response())
        stored = certificate.CertificateSessionData.from_response(response).to_session_dict()
        assert stored["certificate_id"] == "cert-123"
        assert stored["s3_uri"] == "s3://certs/cert-123.pdf"
        assert isinstance(stored["approved_at"], str)


class TestRegistry:
    """Test executor construction from configuration."""

    def test_create_executor(self):
        """Executors use per-agent retry policies and explicit overrides."""
        executor = create_executor("name-check", base_url="http://names.test")
        try:
            assert executor.base_url == "http://names.test"
            assert executor.retry_policy == NAME_CHECK_RETRY_POLICY
        finally:
            executor.destroy()

    def test_unknown_agent(self):
        """Unknown agent names raise ValueError."""
        with pytest.raises(ValueError):
            create_executor("tax")

    def test_registry_reuses_executors(self):
        """The registry builds one executor per agent and closes them together."""
        with AgentRegistry() as registry:
            executors = registry.create_all()
            assert set(executors) == set(AGENT_NAMES)
            assert registry.get("payment") is executors["payment"]
        assert registry.executors == {}
