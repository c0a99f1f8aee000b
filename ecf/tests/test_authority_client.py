"""Tests for the authority HTTP client: token cache, error mapping, audit logging."""

import json
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import requests
from django.test import TestCase
from django.utils import timezone

from ecf.errors import AuthenticationFailed, AuthorityRejection, TransientNetworkError
from ecf.models import AuthorityApiLog
from ecf.services.authority_client import AuthorityClient, AuthToken, map_status
from ecf.services.config_service import DEFAULT_STATUS_MAP
from ecf.services.http_client import pooled_session
from ecf.tests.helpers import make_config


def _response(status_code, body=None, text=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = (json.dumps(body) if body is not None else (text or "")).encode("utf-8")
    response.encoding = "utf-8"
    return response


def _signed():
    return SimpleNamespace(content=b"<ECF>signed</ECF>", digest="abc=", fiscal_number="E0100000001")


class AuthorityClientTestCase(TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.authority = AuthorityClient(make_config(), session=self.session)

    def respond(self, *responses):
        self.session.request.side_effect = list(responses)

    def last_request(self):
        return self.session.request.call_args.kwargs


class AuthenticationTests(AuthorityClientTestCase):
    def test_authenticate_posts_credentials(self):
        self.respond(_response(200, {"token": "tok-1", "expiresIn": 1800}))
        self.assertEqual(self.authority.authenticate(), "tok-1")
        kwargs = self.last_request()
        self.assertEqual(kwargs["url"], "https://authority.test/ecf/auth/token")
        self.assertEqual(kwargs["json"], {"username": "ecf-user", "password": "ecf-pass", "fiscalId": "131000002"})
        self.assertEqual(kwargs["timeout"], 5)
        self.assertTrue(kwargs["verify"])

    def test_password_masked_in_audit_log(self):
        self.respond(_response(200, {"token": "tok-1"}))
        self.authority.authenticate()
        entry = AuthorityApiLog.objects.get()
        self.assertEqual(entry.request_payload["password"], "[REDACTED]")
        self.assertEqual(entry.response_payload["token"], "[REDACTED]")
        self.assertEqual(entry.status_code, 200)

    def test_token_cached_until_near_expiry(self):
        self.respond(_response(200, {"token": "tok-1"}), _response(200, {"token": "tok-2"}))
        self.assertEqual(self.authority.get_token(), "tok-1")
        self.assertEqual(self.authority.get_token(), "tok-1")
        self.assertEqual(self.session.request.call_count, 1)

        self.authority._token = AuthToken(value="tok-1", expires_at=timezone.now() + timedelta(seconds=30))
        self.assertEqual(self.authority.get_token(), "tok-2")

    def test_invalidate_forces_new_token(self):
        self.respond(_response(200, {"token": "tok-1"}), _response(200, {"token": "tok-2"}))
        self.authority.get_token()
        self.authority.invalidate_token()
        self.assertEqual(self.authority.get_token(), "tok-2")

    def test_refused_credentials(self):
        self.respond(_response(401, {"message": "Credenciales inválidas"}))
        with self.assertRaises(AuthenticationFailed) as ctx:
            self.authority.authenticate()
        self.assertEqual(str(ctx.exception), "Credenciales inválidas")
        self.assertEqual(ctx.exception.status_code, 401)

    def test_missing_token(self):
        self.respond(_response(200, {}))
        with self.assertRaises(AuthenticationFailed):
            self.authority.authenticate()

    def test_server_error_is_transient(self):
        self.respond(_response(503, text="Service Unavailable"))
        with self.assertRaises(TransientNetworkError):
            self.authority.authenticate()


class SubmitTests(AuthorityClientTestCase):
    def test_submit_success(self):
        self.respond(_response(200, {"trackId": "TRK-1", "message": "Recibido"}))
        result = self.authority.submit(_signed(), "tok", "E0100000001", "131000002")
        self.assertEqual(result.track_id, "TRK-1")
        self.assertEqual(result.message, "Recibido")

        kwargs = self.last_request()
        self.assertEqual(kwargs["url"], "https://authority.test/ecf/recepcion")
        self.assertEqual(kwargs["data"], b"<ECF>signed</ECF>")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertEqual(kwargs["headers"]["Idempotency-Key"], "E0100000001")
        self.assertEqual(kwargs["headers"]["X-Fiscal-Id"], "131000002")

        entry = AuthorityApiLog.objects.get()
        self.assertEqual(entry.track_id, "TRK-1")
        self.assertNotIn("Bearer", json.dumps(entry.request_payload))

    def test_rejection_reason_kept_verbatim(self):
        self.respond(_response(400, {"message": "RNC comprador no registrado"}))
        with self.assertRaises(AuthorityRejection) as ctx:
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")
        self.assertEqual(ctx.exception.reason, "RNC comprador no registrado")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_unauthorized_is_an_authentication_failure(self):
        self.authority._token = AuthToken(value="tok", expires_at=timezone.now() + timedelta(hours=1))
        self.respond(_response(401, {"message": "Token expirado"}))
        with self.assertRaises(AuthenticationFailed) as ctx:
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIsNone(self.authority._token)

    def test_forbidden_is_still_a_rejection(self):
        self.respond(_response(403, {"message": "Emisor no autorizado"}))
        with self.assertRaises(AuthorityRejection):
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")

    def test_server_error_is_transient(self):
        self.respond(_response(502, text="Bad Gateway"))
        with self.assertRaises(TransientNetworkError) as ctx:
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertEqual(AuthorityApiLog.objects.get().status_code, 502)

    def test_timeout_is_transient_and_logged(self):
        self.session.request.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(TransientNetworkError):
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")
        entry = AuthorityApiLog.objects.get()
        self.assertIn("Timeout", entry.error_message)

    def test_connection_error_is_transient(self):
        self.session.request.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(TransientNetworkError):
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")

    def test_broken_response_body_is_transient(self):
        self.session.request.side_effect = requests.exceptions.ChunkedEncodingError("Connection broken: reset by peer")
        with self.assertRaises(TransientNetworkError) as ctx:
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")
        self.assertIn("ChunkedEncodingError", str(ctx.exception))
        self.assertIn("ChunkedEncodingError", AuthorityApiLog.objects.get().error_message)

    def test_redirect_loop_is_transient(self):
        self.session.request.side_effect = requests.TooManyRedirects("Exceeded 30 redirects.")
        with self.assertRaises(TransientNetworkError):
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")

    def test_missing_track_id_is_transient(self):
        self.respond(_response(200, {"message": "ok"}))
        with self.assertRaises(TransientNetworkError):
            self.authority.submit(_signed(), "tok", "E0100000001", "131000002")


class StatusTests(AuthorityClientTestCase):
    def test_accepted(self):
        self.respond(_response(200, {"status": "Aceptado", "message": "Documento válido"}))
        result = self.authority.check_status("TRK-1", "tok")
        self.assertEqual(result.status, "ACCEPTED")
        self.assertEqual(result.authority_status, "Aceptado")
        self.assertEqual(result.detail, "Documento válido")
        self.assertEqual(self.last_request()["url"], "https://authority.test/ecf/consulta/TRK-1")

    def test_rejected_with_spanish_keys(self):
        self.respond(_response(200, {"estado": "Rechazado", "mensaje": "Firma inválida"}))
        result = self.authority.check_status("TRK-1", "tok")
        self.assertEqual(result.status, "REJECTED")
        self.assertEqual(result.detail, "Firma inválida")

    def test_unknown_status_still_processing(self):
        self.respond(_response(200, {"status": "En Proceso"}))
        self.assertEqual(self.authority.check_status("TRK-1", "tok").status, "SUBMITTED")

    def test_unauthorized_status_query_drops_token(self):
        self.authority._token = AuthToken(value="tok", expires_at=timezone.now() + timedelta(hours=1))
        self.respond(_response(401, {"message": "Token expirado"}))
        with self.assertRaises(AuthenticationFailed):
            self.authority.check_status("TRK-1", "tok")
        self.assertIsNone(self.authority._token)

    def test_track_id_is_quoted(self):
        self.respond(_response(200, {"status": "En Proceso"}))
        self.authority.check_status("a/b c", "tok")
        self.assertEqual(self.last_request()["url"], "https://authority.test/ecf/consulta/a%2Fb%20c")


class HelperTests(TestCase):
    def test_map_status(self):
        self.assertEqual(map_status(" aceptado ", DEFAULT_STATUS_MAP), "ACCEPTED")
        self.assertEqual(map_status("Aceptado Condicional", DEFAULT_STATUS_MAP), "ACCEPTED")
        self.assertEqual(map_status("RECHAZADO", DEFAULT_STATUS_MAP), "REJECTED")
        self.assertEqual(map_status(None, DEFAULT_STATUS_MAP), "SUBMITTED")

    def test_pooled_session_never_retries(self):
        session = pooled_session(4)
        adapter = session.get_adapter("https://authority.test/ecf")
        self.assertEqual(adapter.max_retries.total, 0)
        self.assertEqual(adapter._pool_maxsize, 4)
