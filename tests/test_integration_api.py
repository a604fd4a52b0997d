"""Integration tests for the HTTP surface.

Tests the complete flows including:
- Discord login and callback
- Token refresh, logout and the current-user endpoint
- Bot-initiated wallet verification through to the job queue
- Admin revocation
- Error envelope and health check
"""

import asyncio
import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient

from rolegate import app as app_module
from rolegate.service.oauth import DiscordOAuthClient
from rolegate.service.runtime import RATE_LIMIT_RULES, check_rate_limit, get_runtime
from rolegate.storage.errors import StoreUnavailableError
from rolegate.storage.models import Project

BOT_HEADERS = {"Authorization": "Bot real-secret"}
ADMIN_HEADERS = {"Authorization": "Admin admin-secret-for-tests"}
HOLDER = Account.from_key("0x" + "11" * 32)
STRANGER = Account.from_key("0x" + "22" * 32)


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def pair(runtime):
    return asyncio.run(runtime.refresh_tokens.issue("u1", "alice"))


@pytest.fixture
def project(runtime):
    return runtime.projects.add_project(Project(id="p1", name="Cool Cats", guild_id="g1"))


def _discord_stub(runtime, *, profile=None):
    def handler(request):
        if request.url.path.endswith("/oauth2/token"):
            return httpx.Response(200, json={"access_token": "discord-access"})
        return httpx.Response(200, json=profile or {"id": "42", "username": "alice"})

    runtime.discord = DiscordOAuthClient(
        runtime.settings.discord_client_id,
        runtime.settings.discord_client_secret,
        runtime.settings.discord_redirect_uri,
        transport=httpx.MockTransport(handler),
    )


def _initiate(client, guild_id="g1"):
    return client.post(
        "/v1/verify/initiate",
        json={"guildId": guild_id, "userDiscordId": "u9"},
        headers=BOT_HEADERS,
    )


def _sign(account, message):
    signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
    return "0x" + bytes(signed.signature).hex()


def _signed_body(client, token, account=HOLDER):
    message = client.get(f"/v1/verify/{token}").json()["data"]["message"]
    return {"signature": _sign(account, message), "walletAddress": account.address}


class TestDiscordLogin:
    def test_login_redirects_with_state(self, client, runtime):
        response = client.get("/v1/auth/discord", follow_redirects=False)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        params = parse_qs(location.query)
        assert params["client_id"] == ["123456789"]
        assert params["redirect_uri"] == ["http://api.test/v1/auth/discord/callback"]
        assert asyncio.run(runtime.store.get(f"oauth:{params['state'][0]}")) == "1"

    def test_callback_issues_pair_in_fragment(self, client, runtime):
        _discord_stub(runtime)
        state = asyncio.run(runtime.oauth_states.issue())

        response = client.get(
            "/v1/auth/discord/callback",
            params={"code": "abc", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == "http://frontend.test/auth/callback"
        fragment = parse_qs(location.fragment)
        claims = runtime.codec.verify_access(fragment["accessToken"][0])
        assert (claims.subject, claims.display_name) == ("42", "alice")
        asyncio.run(runtime.refresh_tokens.validate(fragment["refreshToken"][0]))

    def test_callback_state_is_single_use(self, client, runtime):
        _discord_stub(runtime)
        state = asyncio.run(runtime.oauth_states.issue())
        client.get("/v1/auth/discord/callback", params={"code": "abc", "state": state}, follow_redirects=False)

        response = client.get(
            "/v1/auth/discord/callback",
            params={"code": "abc", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_callback_upstream_failure(self, client, runtime):
        _discord_stub(runtime, profile={"username": "no-id"})
        state = asyncio.run(runtime.oauth_states.issue())

        response = client.get(
            "/v1/auth/discord/callback",
            params={"code": "abc", "state": state},
            follow_redirects=False,
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "upstream_error"


class TestSessionTokens:
    def test_refresh_rotates_pair(self, client, pair):
        response = client.post("/v1/auth/refresh", json={"refreshToken": pair.refresh_token})

        assert response.status_code == 200
        data = response.json()["data"]
        assert set(data) == {"accessToken", "refreshToken"}
        assert data["refreshToken"] != pair.refresh_token

    def test_refresh_replay_is_revoked(self, client, pair):
        client.post("/v1/auth/refresh", json={"refreshToken": pair.refresh_token})

        response = client.post("/v1/auth/refresh", json={"refreshToken": pair.refresh_token})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Refresh token has been revoked"

    def test_refresh_rejects_garbage(self, client):
        response = client.post("/v1/auth/refresh", json={"refreshToken": "nope"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid refresh token"

    def test_refresh_rejects_access_token(self, client, pair):
        response = client.post("/v1/auth/refresh", json={"refreshToken": pair.access_token})

        assert response.status_code == 401

    def test_me_returns_claims(self, client, pair):
        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {pair.access_token}"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["subject"] == "u1"
        assert data["username"] == "alice"

    def test_me_requires_bearer(self, client, pair):
        response = client.get("/v1/auth/me", headers={"Authorization": pair.access_token})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_deeply_nested_token(self, client):
        nested = base64.urlsafe_b64encode(b"[" * 3000).decode().rstrip("=")

        response = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {nested}.e30.sig"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_refresh_token(self, client, pair):
        headers = {"Authorization": f"Bearer {pair.access_token}"}

        response = client.post("/v1/auth/logout", json={"refreshToken": pair.refresh_token}, headers=headers)

        assert response.status_code == 200
        assert response.json()["data"] == {"loggedOut": True}
        replay = client.post("/v1/auth/refresh", json={"refreshToken": pair.refresh_token})
        assert replay.status_code == 401

    def test_logout_with_stale_token_still_succeeds(self, client, pair):
        headers = {"Authorization": f"Bearer {pair.access_token}"}

        response = client.post("/v1/auth/logout", json={"refreshToken": "stale"}, headers=headers)

        assert response.status_code == 200


class TestVerificationFlow:
    def test_initiate_peek_complete(self, client, runtime, project):
        initiated = _initiate(client)
        assert initiated.status_code == 200
        token = initiated.json()["data"]["token"]
        assert initiated.json()["data"]["verifyUrl"] == f"http://frontend.test/verify/{token}"

        view = client.get(f"/v1/verify/{token}")
        assert view.status_code == 200
        assert view.json()["data"]["projectName"] == "Cool Cats"
        message = view.json()["data"]["message"]
        assert message.startswith("Verify Discord account for Cool Cats\nNonce: ")

        signature = _sign(HOLDER, message)
        completed = client.post(
            f"/v1/verify/{token}/complete",
            json={"signature": signature, "walletAddress": HOLDER.address.lower()},
        )
        assert completed.status_code == 202
        assert completed.json()["data"]["status"] == "queued"
        assert completed.json()["data"]["walletAddress"] == HOLDER.address

        jobs = [json.loads(raw) for raw in runtime.store.drain(runtime.verification_queue)]
        assert len(jobs) == 1
        assert jobs[0]["message"] == message
        assert jobs[0]["signature"] == signature
        assert jobs[0]["walletAddress"] == HOLDER.address
        assert jobs[0]["challenge"]["guildId"] == "g1"

    def test_complete_twice_is_not_found(self, client, project):
        token = _initiate(client).json()["data"]["token"]
        body = _signed_body(client, token)
        client.post(f"/v1/verify/{token}/complete", json=body)

        response = client.post(f"/v1/verify/{token}/complete", json=body)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_wrong_signer_rejected_and_link_kept(self, client, runtime, project):
        token = _initiate(client).json()["data"]["token"]
        message = client.get(f"/v1/verify/{token}").json()["data"]["message"]

        response = client.post(
            f"/v1/verify/{token}/complete",
            json={"signature": _sign(STRANGER, message), "walletAddress": HOLDER.address},
        )

        assert response.status_code == 400
        assert "not signed by the provided address" in response.json()["error"]["message"]
        assert runtime.store.drain(runtime.verification_queue) == []
        assert client.get(f"/v1/verify/{token}").status_code == 200

    def test_bad_address_checksum_rejected(self, client, project):
        token = _initiate(client).json()["data"]["token"]
        body = _signed_body(client, token)
        body["walletAddress"] = "0x" + HOLDER.address[2:].swapcase()

        response = client.post(f"/v1/verify/{token}/complete", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid wallet address checksum"

    def test_queue_failure_keeps_challenge(self, client, runtime, project, monkeypatch):
        token = _initiate(client).json()["data"]["token"]
        body = _signed_body(client, token)

        async def unavailable(key, expected, queue, value):
            raise StoreUnavailableError("ephemeral store unavailable")

        monkeypatch.setattr(runtime.store, "take_and_enqueue", unavailable)
        response = client.post(f"/v1/verify/{token}/complete", json=body)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "store_unavailable"
        assert client.get(f"/v1/verify/{token}").status_code == 200
        assert runtime.store.drain(runtime.verification_queue) == []

        monkeypatch.undo()
        retried = client.post(f"/v1/verify/{token}/complete", json=body)
        assert retried.status_code == 202
        assert len(runtime.store.drain(runtime.verification_queue)) == 1

    def test_completion_over_limit_burns_link(self, client, runtime, project):
        token = _initiate(client).json()["data"]["token"]
        body = _signed_body(client, token)
        rule = RATE_LIMIT_RULES["verification_completion"]
        for _ in range(rule.limit):
            asyncio.run(check_rate_limit(runtime, rule, token))

        response = client.post(f"/v1/verify/{token}/complete", json=body)

        assert response.status_code == 429
        assert "Retry-After" in response.headers
        assert client.get(f"/v1/verify/{token}").status_code == 404

    def test_malformed_token_rejected(self, client):
        response = client.get("/v1/verify/not-a-token")

        assert response.status_code == 400

    def test_invalid_wallet_rejected(self, client, project):
        token = _initiate(client).json()["data"]["token"]

        response = client.post(
            f"/v1/verify/{token}/complete",
            json={"signature": "0xdeadbeef", "walletAddress": "0x123"},
        )

        assert response.status_code == 400
        assert client.get(f"/v1/verify/{token}").status_code == 200

    def test_unknown_guild_not_found(self, client):
        response = _initiate(client, guild_id="nope")

        assert response.status_code == 404
        assert "Run /setup first" in response.json()["error"]["message"]

    def test_initiate_wrong_bot_secret_forbidden(self, client, project):
        response = client.post(
            "/v1/verify/initiate",
            json={"guildId": "g1", "userDiscordId": "u9"},
            headers={"Authorization": "Bot wrong-secret"},
        )

        assert response.status_code == 403

    def test_initiate_without_scheme_unauthorized(self, client, project):
        response = client.post(
            "/v1/verify/initiate",
            json={"guildId": "g1", "userDiscordId": "u9"},
            headers={"Authorization": "real-secret"},
        )

        assert response.status_code == 401

    def test_initiate_rate_limited_per_member(self, client, project):
        statuses = [_initiate(client).status_code for _ in range(6)]

        assert statuses == [200] * 5 + [429]


class TestAdmin:
    def test_admin_revokes_token(self, client, runtime, pair):
        token_id = runtime.codec.verify_refresh(pair.refresh_token).token_id

        response = client.delete(f"/v1/admin/refresh-tokens/{token_id}", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        replay = client.post("/v1/auth/refresh", json={"refreshToken": pair.refresh_token})
        assert replay.json()["error"]["message"] == "Refresh token has been revoked"

    def test_admin_rejects_bot_secret(self, client):
        response = client.delete("/v1/admin/refresh-tokens/abc", headers=BOT_HEADERS)

        assert response.status_code == 401


class TestEnvelope:
    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/does-not-exist")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "not_found"

    def test_request_id_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_health_reports_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["type"] == "memory"
