"""Tests for sample_client.py."""
import sys
import urllib.parse
from pathlib import Path

import httpx
import pytest
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pkce
import sample_client
from config import GateConfig
from decision_engine import LocalEngine
from server import create_app

BASE = "http://testserver"
REDIRECT = "http://localhost:9000/cb"


@pytest.fixture
def client():
    return TestClient(create_app(GateConfig(), engine=LocalEngine()))


class TestAuthorizeUrl:
    def test_parameters(self):
        url = sample_client.build_authorize_url(BASE + "/", "app", REDIRECT, "chal")
        parts = urllib.parse.urlsplit(url)
        assert parts.path == "/authorize"
        assert dict(urllib.parse.parse_qsl(parts.query)) == {
            "response_type": "code",
            "client_id": "app",
            "redirect_uri": REDIRECT,
            "scope": "openid",
            "state": "sample-state",
            "code_challenge": "chal",
            "code_challenge_method": "S256",
        }


class TestExchange:
    def test_against_gateway(self, client):
        pair = pkce.generate_pair()
        url = sample_client.build_authorize_url(BASE, "app", REDIRECT, pair.challenge)
        assert client.get(url).status_code == 200
        client.post("/login", data={"username": "alice", "password": "wonderland"})
        resp = client.post("/auth/decision", data={"decision": "allow"}, follow_redirects=False)
        assert resp.status_code == 302

        resp = sample_client.exchange_code(BASE, "mock-code", "app", REDIRECT,
                                           pair.verifier, client=client)
        assert resp.status_code == 200
        assert resp.json()["access_token"] == "mock-access-token"

    def test_wrong_verifier(self, client):
        pair = pkce.generate_pair()
        client.get(sample_client.build_authorize_url(BASE, "app", REDIRECT, pair.challenge))
        client.post("/login", data={"username": "alice", "password": "wonderland"})
        client.post("/auth/decision", data={"decision": "allow"}, follow_redirects=False)

        resp = sample_client.exchange_code(BASE, "mock-code", "app", REDIRECT,
                                           pkce.generate_verifier(), client=client)
        assert resp.status_code == 400


class TestMain:
    def test_success(self, monkeypatch, capsys):
        seen = {}

        def fake_exchange(base_url, code, client_id, redirect_uri, verifier):
            seen.update(code=code, verifier=verifier)
            return httpx.Response(200, json={"access_token": "mock-access-token"})

        monkeypatch.setattr(sample_client, "exchange_code", fake_exchange)
        assert sample_client.main(["--base-url", BASE]) == 0

        out = capsys.readouterr().out
        assert f"{BASE}/authorize?" in out
        assert "mock-access-token" in out
        assert seen["code"] == "mock-code"
        assert 43 <= len(seen["verifier"]) <= 128

    def test_error_status(self, monkeypatch):
        monkeypatch.setattr(sample_client, "exchange_code",
                            lambda *a: httpx.Response(400, json={"error": "invalid_grant"}))
        assert sample_client.main([]) == 1

    def test_unreachable(self, monkeypatch, capsys):
        def refuse(*args):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(sample_client, "exchange_code", refuse)
        assert sample_client.main([]) == 1
        assert "Failed to call token endpoint" in capsys.readouterr().err
