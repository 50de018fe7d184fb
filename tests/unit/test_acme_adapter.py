"""Unit tests for the ACME client adapter."""

from datetime import UTC, datetime, timedelta
from unittest import mock

import josepy as jose
import pytest
from acme import challenges, client, errors, messages
from conftest import TEST_THUMBPRINT, make_certificate_pem
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec

from fairydust.acme_adapter import AcmeClientAdapter, LibAcmeBackend, translate_error
from fairydust.challenges import challenge_value
from fairydust.crypto import generate_ecdsa_key, generate_rsa_key
from fairydust.exceptions import (
    AcmeRejectedError,
    PermanentError,
    TransientError,
    ValidationError,
)
from fairydust.models import CertificateRequest, ErrorCategory


@pytest.fixture
def adapter(acme_backend):
    return AcmeClientAdapter(acme_backend, validation_timeout=5)


class TestTranslateError:
    """Tests for mapping ACME client exceptions into the taxonomy."""

    @pytest.mark.parametrize("code", ["rateLimited", "serverInternal", "badNonce"])
    def test_retryable_problem_codes(self, code):
        error = translate_error(messages.Error.with_code(code, detail="try later"))
        assert isinstance(error, TransientError)
        assert "try later" in error.message

    @pytest.mark.parametrize("code", ["dns", "unauthorized", "incorrectResponse"])
    def test_validation_problem_codes(self, code):
        error = translate_error(messages.Error.with_code(code, detail="no TXT"), "example.com")
        assert isinstance(error, ValidationError)
        assert error.domain == "example.com"

    def test_rejected_identifier(self):
        error = translate_error(messages.Error.with_code("rejectedIdentifier", detail="nope"))
        assert isinstance(error, AcmeRejectedError)
        assert error.category == ErrorCategory.PERMANENT
        assert error.acme_type == "urn:ietf:params:acme:error:rejectedIdentifier"

    def test_polling_timeout_is_transient(self):
        assert isinstance(translate_error(errors.TimeoutError()), TransientError)

    def test_failed_authorizations(self):
        error = translate_error(errors.ValidationError([]))
        assert isinstance(error, ValidationError)

    def test_network_failure_is_transient(self):
        assert isinstance(translate_error(ConnectionError("refused")), TransientError)

    def test_unknown_exception_is_permanent(self):
        error = translate_error(KeyError("x"))
        assert type(error) is PermanentError

    def test_own_errors_pass_through(self):
        original = ValidationError("already mapped")
        assert translate_error(original) is original


class TestAcmeClientAdapter:
    """Tests for AcmeClientAdapter with a fake backend."""

    def test_prepare_returns_challenges(self, adapter):
        request = CertificateRequest(domains=["example.com", "*.example.com"])

        challenges = adapter.prepare(request)

        assert [c.domain for c in challenges] == ["example.com", "*.example.com"]
        first = challenges[0]
        assert first.value == challenge_value(first.token, TEST_THUMBPRINT)
        assert first.record_name == challenges[1].record_name

    def test_prepare_translates_backend_errors(self, adapter, acme_backend):
        acme_backend.begin_error = messages.Error.with_code("caa", detail="CAA forbids")

        with pytest.raises(AcmeRejectedError, match="CAA forbids"):
            adapter.prepare(CertificateRequest(domains=["example.com"]))

    def test_request_validation(self, adapter, acme_backend):
        request = CertificateRequest(domains=["example.com"])
        (challenge,) = adapter.prepare(request)

        result = adapter.request_validation("example.com", challenge.token)

        assert result.valid
        assert acme_backend.answered == ["example.com"]

    def test_request_validation_failure_is_structured(self, adapter, acme_backend):
        request = CertificateRequest(domains=["example.com"])
        (challenge,) = adapter.prepare(request)
        acme_backend.answer_errors["example.com"] = messages.Error.with_code(
            "unauthorized", detail="wrong TXT"
        )

        result = adapter.request_validation("example.com", challenge.token)

        assert not result.valid
        assert isinstance(result.error, ValidationError)
        assert "wrong TXT" in result.detail

    def test_request_validation_unknown_token(self, adapter):
        result = adapter.request_validation("example.com", "no-such-token")
        assert not result.valid
        assert result.detail == "Unknown challenge token"

    def test_retrieve_certificate(self, adapter):
        request = CertificateRequest(domains=["example.com", "www.example.com"])
        adapter.prepare(request)

        certificate = adapter.retrieve_certificate(request)

        assert certificate.domains == ["example.com", "www.example.com"]
        assert certificate.expires_at > certificate.issued_at
        assert certificate.issued_at <= datetime.now(UTC)
        assert certificate.request_id == request.domain_set_id
        assert certificate.private_key_pem is not None

    def test_retrieve_without_order(self, adapter):
        with pytest.raises(PermanentError, match="No open ACME order"):
            adapter.retrieve_certificate(CertificateRequest(domains=["example.com"]))

    def test_retrieve_translates_errors(self, adapter, acme_backend):
        request = CertificateRequest(domains=["example.com"])
        adapter.prepare(request)
        acme_backend.finalize_error = errors.TimeoutError()

        with pytest.raises(TransientError):
            adapter.retrieve_certificate(request)

    def test_discard_forgets_order(self, adapter):
        request = CertificateRequest(domains=["example.com"])
        (challenge,) = adapter.prepare(request)

        adapter.discard(request)

        assert not adapter.request_validation("example.com", challenge.token).valid
        with pytest.raises(PermanentError):
            adapter.retrieve_certificate(request)

    def test_revoke(self, adapter, acme_backend):
        request = CertificateRequest(domains=["example.com"])
        adapter.prepare(request)
        certificate = adapter.retrieve_certificate(request)

        adapter.revoke(certificate)

        assert acme_backend.revoked == [certificate.certificate_pem]


DIRECTORY_URL = "https://ca.example/directory"


def _authzr(domain, *chall_types, status=messages.STATUS_PENDING, wildcard=False):
    """Authorization offering one challenge of each type, tokens 0x01.., 0x02.., ..."""
    uri = f"https://ca.example/authz/{domain}"
    challbs = tuple(
        messages.ChallengeBody(
            uri=f"{uri}/{i}",
            status=messages.STATUS_PENDING,
            chall=chall_type(token=bytes([i + 1]) * 16),
        )
        for i, chall_type in enumerate(chall_types)
    )
    authz = messages.Authorization(
        identifier=messages.Identifier(typ=messages.IDENTIFIER_FQDN, value=domain),
        challenges=challbs,
        status=status,
        wildcard=wildcard,
    )
    return messages.AuthorizationResource(body=authz, uri=uri)


def _orderr(*authzrs):
    order = messages.Order(
        identifiers=tuple(a.body.identifier for a in authzrs),
        status=messages.STATUS_PENDING,
        finalize="https://ca.example/order/1/finalize",
    )
    return messages.OrderResource(
        body=order, uri="https://ca.example/order/1", authorizations=list(authzrs)
    )


@pytest.fixture
def acme_client():
    return mock.MagicMock(spec=client.ClientV2)


@pytest.fixture
def lib_backend(acme_client):
    backend = LibAcmeBackend(DIRECTORY_URL, generate_rsa_key())
    backend._client = acme_client
    return backend


class TestLibAcmeBackendOrders:
    """Tests for LibAcmeBackend against a mocked ClientV2."""

    def test_begin_order_picks_dns01(self, lib_backend, acme_client):
        authzr = _authzr("example.com", challenges.HTTP01, challenges.DNS01)
        acme_client.new_order.return_value = _orderr(authzr)

        order = lib_backend.begin_order(["example.com"])

        [pending] = order.challenges
        dns_challb = authzr.body.challenges[1]
        assert pending.domain == "example.com"
        assert pending.token == dns_challb.chall.encode("token")
        assert pending.value == challenge_value(pending.token, lib_backend._thumbprint)
        assert order.state["challenges"][pending.token] is dns_challb
        assert "PRIVATE KEY" in order.state["private_key_pem"]

    def test_csr_covers_requested_domains(self, lib_backend, acme_client):
        acme_client.new_order.return_value = _orderr(
            _authzr("example.com", challenges.DNS01), _authzr("www.example.com", challenges.DNS01)
        )

        lib_backend.begin_order(["example.com", "www.example.com"])

        csr = x509.load_pem_x509_csr(acme_client.new_order.call_args.args[0])
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        assert san.value.get_values_for_type(x509.DNSName) == ["example.com", "www.example.com"]

    def test_certificate_key_follows_key_type(self, acme_client):
        backend = LibAcmeBackend(DIRECTORY_URL, generate_rsa_key(), key_type="ec256")
        backend._client = acme_client
        acme_client.new_order.return_value = _orderr(_authzr("example.com", challenges.DNS01))

        backend.begin_order(["example.com"])

        csr = x509.load_pem_x509_csr(acme_client.new_order.call_args.args[0])
        assert isinstance(csr.public_key(), ec.EllipticCurvePublicKey)

    def test_valid_authorizations_skipped(self, lib_backend, acme_client):
        acme_client.new_order.return_value = _orderr(
            _authzr("example.com", challenges.DNS01, status=messages.STATUS_VALID),
            _authzr("www.example.com", challenges.DNS01),
        )

        order = lib_backend.begin_order(["example.com", "www.example.com"])

        assert [c.domain for c in order.challenges] == ["www.example.com"]

    def test_wildcard_authorization_prefixed(self, lib_backend, acme_client):
        acme_client.new_order.return_value = _orderr(
            _authzr("example.com", challenges.DNS01, wildcard=True)
        )

        order = lib_backend.begin_order(["*.example.com"])

        assert [c.domain for c in order.challenges] == ["*.example.com"]

    def test_no_dns01_offered(self, lib_backend, acme_client):
        acme_client.new_order.return_value = _orderr(_authzr("example.com", challenges.HTTP01))

        with pytest.raises(AcmeRejectedError, match="No dns-01 challenge") as exc_info:
            lib_backend.begin_order(["example.com"])
        assert exc_info.value.domain == "example.com"

    def test_answer_challenge_sends_dns01_response(self, lib_backend, acme_client):
        acme_client.new_order.return_value = _orderr(_authzr("example.com", challenges.DNS01))
        order = lib_backend.begin_order(["example.com"])
        [pending] = order.challenges

        lib_backend.answer_challenge(order, pending.domain, pending.token)

        challb, response = acme_client.answer_challenge.call_args.args
        assert challb is order.state["challenges"][pending.token]
        assert isinstance(response, challenges.DNS01Response)

    def test_finalize_returns_chain_and_key(self, lib_backend, acme_client):
        orderr = _orderr(_authzr("example.com", challenges.DNS01))
        acme_client.new_order.return_value = orderr
        acme_client.poll_and_finalize.return_value = orderr.update(fullchain_pem="CHAIN")
        order = lib_backend.begin_order(["example.com"])
        deadline = datetime.now() + timedelta(seconds=90)

        material = lib_backend.finalize(order, deadline)

        acme_client.poll_and_finalize.assert_called_once_with(orderr, deadline)
        assert material.fullchain_pem == "CHAIN"
        assert material.private_key_pem == order.state["private_key_pem"]

    def test_revoke(self, lib_backend, acme_client):
        cert_pem, _ = make_certificate_pem(["example.com"])

        lib_backend.revoke(cert_pem)

        cert, reason = acme_client.revoke.call_args.args
        assert cert == x509.load_pem_x509_certificate(cert_pem.encode())
        assert reason == 0


class TestLibAcmeBackendAccount:
    """Tests for lazy account setup."""

    @pytest.fixture
    def network(self, monkeypatch):
        network = mock.MagicMock()
        monkeypatch.setattr(client, "ClientNetwork", network)
        return network

    @pytest.fixture
    def client_cls(self, monkeypatch):
        client_cls = mock.MagicMock()
        monkeypatch.setattr(client, "ClientV2", client_cls)
        return client_cls

    def test_registers_once(self, network, client_cls):
        backend = LibAcmeBackend(DIRECTORY_URL, generate_rsa_key(), email="ops@example.com")

        acme_client = backend._acme()
        backend._acme()

        assert acme_client is client_cls.return_value
        client_cls.get_directory.assert_called_once_with(DIRECTORY_URL, network.return_value)
        registration = acme_client.new_account.call_args.args[0]
        assert registration.terms_of_service_agreed
        assert registration.contact == ("mailto:ops@example.com",)
        acme_client.new_account.assert_called_once()
        acme_client.query_registration.assert_not_called()

    def test_existing_account_looked_up(self, network, client_cls):
        acme_client = client_cls.return_value
        acme_client.new_account.side_effect = errors.ConflictError("https://ca.example/acct/1")
        backend = LibAcmeBackend(DIRECTORY_URL, generate_rsa_key())

        assert backend._acme() is acme_client

        existing = acme_client.query_registration.call_args.args[0]
        assert existing.uri == "https://ca.example/acct/1"

    @pytest.mark.parametrize(
        "key_factory,jwk_type,alg",
        [
            (generate_rsa_key, jose.JWKRSA, jose.RS256),
            (lambda: generate_ecdsa_key("P-256"), jose.JWKEC, jose.ES256),
            (lambda: generate_ecdsa_key("P-384"), jose.JWKEC, jose.ES384),
        ],
    )
    def test_signing_algorithm_matches_key(self, network, client_cls, key_factory, jwk_type, alg):
        backend = LibAcmeBackend(DIRECTORY_URL, key_factory())

        backend._acme()

        jwk = network.call_args.args[0]
        assert isinstance(jwk, jwk_type)
        assert network.call_args.kwargs["alg"] is alg
