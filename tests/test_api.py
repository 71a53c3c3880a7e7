from hive_signer.keys import PUBLIC_KEY_PATTERN, create_authority, derive
from signer_app import config, main
from signer_app.rate_limit import RateLimiter


def account_body(name, pubkeys, **extra):
    body = {
        "new_account_name": name,
        "owner": create_authority(pubkeys["owner"]),
        "active": create_authority(pubkeys["active"]),
        "posting": create_authority(pubkeys["posting"]),
        "memo_key": pubkeys["memo"],
    }
    body.update(extra)
    return body


def prepare(client, headers, name="skateuser"):
    r = client.post("/prepare-account", json={"new_account_name": name}, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


def finalize(client, headers, prepared, name="skateuser", **extra):
    body = account_body(name, prepared["pubkeys"], session_id=prepared["session_id"], confirmed=True, **extra)
    return client.post("/create-claimed-account", json=body, headers=headers)


# Health

def test_healthz_json(client, auth_headers):
    r = client.get("/healthz")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["auth"] == "not-provided"
    assert client.get("/healthz", headers=auth_headers).json()["auth"] == "valid"
    assert client.get("/healthz", headers={"x-signer-token": "nope"}).json()["auth"] == "invalid"


def test_healthz_html(client):
    r = client.get("/healthz", headers={"accept": "text/html"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/html")
    assert "Signup Signer Health" in r.text


def test_request_id_propagated(client):
    r = client.get("/healthz", headers={"x-request-id": "req-123"})
    assert r.headers["x-request-id"] == "req-123"
    assert client.get("/healthz").headers["x-request-id"]


# Authentication

def test_account_routes_require_token(client):
    for path, body in (("/prepare-account", {"new_account_name": "skateuser"}),
                       ("/claim-account", None),
                       ("/create-claimed-account", {})):
        r = client.post(path, json=body)
        assert r.status_code == 401
        assert r.json()["error"] == "Unauthorized"


def test_wrong_token(client):
    r = client.post("/prepare-account", json={"new_account_name": "skateuser"},
                    headers={"x-signer-token": "wrong"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid x-signer-token"


# Prepare

def test_prepare_account(client, auth_headers):
    body = prepare(client, auth_headers)
    assert body["success"] is True
    assert set(body["keys"]) == {"owner", "active", "posting", "memo", "master_password"}
    for key in body["pubkeys"].values():
        assert PUBLIC_KEY_PATTERN.match(key)
    assert len(body["session_id"]) == 32
    assert body["expires_at"].endswith("Z")


def test_prepare_invalid_name(client, auth_headers):
    r = client.post("/prepare-account", json={"new_account_name": "Bad_Name"}, headers=auth_headers)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Validation Error"
    assert body["details"][0]["field"] == "new_account_name"
    assert "Bad_Name" not in r.text


def test_prepare_name_taken(client, auth_headers):
    r = client.post("/prepare-account", json={"new_account_name": "takenname"}, headers=auth_headers)
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "Validation Error"
    assert body["code"] == "NAME_TAKEN"
    assert body["field"] == "new_account_name"


def test_prepare_foreign_creator(client, auth_headers):
    r = client.post("/prepare-account", json={"new_account_name": "skateuser", "creator_account": "other"},
                    headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["field"] == "creator_account"


def test_prepare_escrows_keys(client, auth_headers, signer):
    body = prepare(client, auth_headers)
    record = signer.recovery.retrieve("skateuser")
    assert record.correlation_id == f"session-{body['session_id']}"
    assert record.private_keys["owner"] == body["keys"]["owner"]
    assert record.request_info["request_id"]


# Finalize

def test_session_flow_single_use(client, auth_headers, ledger):
    prepared = prepare(client, auth_headers)
    r = finalize(client, auth_headers, prepared)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["success"] is True
    assert body["account_name"] == "skateuser"
    assert body["transaction_id"]
    assert ledger.account_exists("skateuser")

    again = finalize(client, auth_headers, prepared)
    assert again.status_code == 400
    assert again.json()["error"] == "Session Already Used"
    assert len(ledger.broadcasts) == 1


def test_session_flow_with_master_password(client, auth_headers):
    prepared = prepare(client, auth_headers)
    r = finalize(client, auth_headers, prepared, master_password=prepared["keys"]["master_password"])
    assert r.status_code == 201


def test_session_wrong_master_password(client, auth_headers):
    prepared = prepare(client, auth_headers)
    r = finalize(client, auth_headers, prepared, master_password="P" + "1" * 50)
    assert r.status_code == 400
    assert r.json()["error"] == "Key Mismatch"


def test_session_mismatch(client, auth_headers):
    prepared = prepare(client, auth_headers)
    r = finalize(client, auth_headers, prepared, name="otheruser")
    assert r.status_code == 400
    assert r.json()["error"] == "Session Mismatch"


def test_key_mismatch(client, auth_headers):
    prepared = prepare(client, auth_headers)
    other = derive("skateuser").public_keys
    body = account_body("skateuser", other, session_id=prepared["session_id"], confirmed=True)
    r = client.post("/create-claimed-account", json=body, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Key Mismatch"


def test_unknown_session(client, auth_headers):
    prepared = prepare(client, auth_headers)
    prepared["session_id"] = "0" * 32
    r = finalize(client, auth_headers, prepared)
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid Session"


def test_broadcast_failure_maps_category(client, auth_headers, ledger):
    prepared = prepare(client, auth_headers)
    ledger.fail_next_broadcast = "skatehive has no claimed accounts"
    r = finalize(client, auth_headers, prepared)
    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "No Claimed Accounts"
    assert body["hive_error"] == "skatehive has no claimed accounts"
    assert body["ledger_category"] == "NO_CLAIMED_ACCOUNTS"

    retry = finalize(client, auth_headers, prepared)
    assert retry.json()["error"] == "Session Already Used"


def test_invalid_memo_key(client, auth_headers):
    prepared = prepare(client, auth_headers)
    r = finalize(client, auth_headers, prepared, memo_key="STMnotakey")
    assert r.status_code == 400
    assert any(d["field"] == "memo_key" for d in r.json()["details"])


# Direct mode

def test_direct_create_with_escrow(client, auth_headers, signer):
    bundle = derive("directuser")
    body = account_body("directuser", bundle.public_keys, private_keys=dict(bundle.private_keys))
    r = client.post("/create-claimed-account", json=body, headers=auth_headers)
    assert r.status_code == 201, r.text
    record = signer.recovery.retrieve("directuser")
    assert record.correlation_id == r.json()["transaction_id"]


def test_direct_create_name_taken(client, auth_headers):
    bundle = derive("takenname")
    r = client.post("/create-claimed-account", json=account_body("takenname", bundle.public_keys),
                    headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["field"] == "new_account_name"


def test_session_id_without_confirmation_is_direct(client, auth_headers, ledger):
    prepared = prepare(client, auth_headers)
    body = account_body("skateuser", prepared["pubkeys"], session_id=prepared["session_id"])
    r = client.post("/create-claimed-account", json=body, headers=auth_headers)
    assert r.status_code == 201
    # the reservation was not touched
    assert main.services().sessions.get(prepared["session_id"]).used is False


# Claim

def test_claim_account(client, auth_headers):
    r = client.post("/claim-account", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["transaction_id"]


def test_claim_account_insufficient_rc(client, auth_headers, ledger):
    ledger.fail_next_broadcast = "bandwidth limit exceeded"
    r = client.post("/claim-account", headers=auth_headers)
    assert r.status_code == 502
    assert r.json()["error"] == "Insufficient Resources"


# Admin

def test_session_stats(client, auth_headers):
    prepare(client, auth_headers)
    r = client.get("/session-stats", headers=auth_headers)
    assert r.status_code == 200
    body = r.json()
    assert body["stats"]["active_sessions"] == 1
    assert body["cleaned_expired_sessions"] == 0


def test_emergency_recovery_routes(client, auth_headers):
    prepared = prepare(client, auth_headers)

    listing = client.get("/emergency-recovery/list", headers=auth_headers).json()
    assert listing["count"] == 1
    assert "private_keys" not in listing["accounts"][0]

    record = client.get("/emergency-recovery/skateuser", headers=auth_headers).json()
    assert record["private_keys"]["owner"] == prepared["keys"]["owner"]
    assert record["status"] == "created"
    assert record["expired"] is False

    r = client.post("/emergency-recovery/skateuser/mark-delivered",
                    json={"transaction_id": f"session-{prepared['session_id']}"}, headers=auth_headers)
    assert r.status_code == 200
    record = client.get("/emergency-recovery/skateuser", headers=auth_headers).json()
    assert record["status"] == "delivered"


def test_emergency_recovery_not_found(client, auth_headers):
    r = client.get("/emergency-recovery/nobody", headers=auth_headers)
    assert r.status_code == 404
    r = client.post("/emergency-recovery/nobody/mark-delivered",
                    json={"transaction_id": "abc"}, headers=auth_headers)
    assert r.status_code == 404


def test_admin_routes_hidden_in_production(client, auth_headers, monkeypatch):
    monkeypatch.setattr(config, "ENV", "production")
    for path in ("/session-stats", "/emergency-recovery/list", "/emergency-recovery/skateuser"):
        r = client.get(path, headers=auth_headers)
        assert r.status_code == 404
        assert r.json() == {"error": "Not Found"}


# Rate limits and limits

def test_account_rate_limit(client, auth_headers, monkeypatch):
    monkeypatch.setattr(main, "account_limiter", RateLimiter(2))
    assert client.post("/claim-account", headers=auth_headers).status_code == 200
    assert client.post("/claim-account", headers=auth_headers).status_code == 200
    r = client.post("/claim-account", headers=auth_headers)
    assert r.status_code == 429
    assert r.json()["error"] == "Too Many Requests"
    assert "Retry-After" in r.headers
    assert r.headers["RateLimit-Remaining"] == "0"


def test_global_rate_limit_skips_health(client, auth_headers, monkeypatch):
    monkeypatch.setattr(main, "global_limiter", RateLimiter(1))
    assert client.post("/claim-account", headers=auth_headers).status_code == 200
    r = client.post("/claim-account", headers=auth_headers)
    assert r.status_code == 429
    assert "Global" in r.json()["message"]
    assert client.get("/healthz").status_code == 200


def test_rotating_forwarded_for_does_not_evade_limit(client, auth_headers):
    limit = config.ACCOUNT_RATE_LIMIT
    statuses = [
        client.post("/claim-account",
                    headers={**auth_headers, "x-forwarded-for": f"203.0.113.{i}"}).status_code
        for i in range(limit + 1)
    ]
    assert statuses[:limit] == [200] * limit
    assert statuses[-1] == 429


def test_forwarded_for_behind_trusted_proxy(client, auth_headers, monkeypatch):
    monkeypatch.setattr(config, "TRUST_PROXY_HOPS", 1)
    monkeypatch.setattr(main, "account_limiter", RateLimiter(1))
    assert client.post("/claim-account",
                       headers={**auth_headers, "x-forwarded-for": "198.51.100.1"}).status_code == 200
    assert client.post("/claim-account",
                       headers={**auth_headers, "x-forwarded-for": "198.51.100.2"}).status_code == 200
    # a forged leftmost hop is ignored; the proxy-appended hop still identifies the client
    r = client.post("/claim-account",
                    headers={**auth_headers, "x-forwarded-for": "203.0.113.9, 198.51.100.1"})
    assert r.status_code == 429


def test_sweeper_prunes_rate_limit_state(signer, ledger, monkeypatch):
    class Clock:
        now = 1000.0

        def __call__(self):
            return self.now

    clock = Clock()
    monkeypatch.setattr(main, "global_limiter", RateLimiter(5, window_seconds=60, clock=clock))
    monkeypatch.setattr(main, "account_limiter", RateLimiter(5, window_seconds=60, clock=clock))
    services = main.configure(ledger=ledger, sessions=signer.sessions, recovery=signer.recovery,
                              start_sweeper=True)
    try:
        for i in range(3):
            main.global_limiter.check(f"ip:203.0.113.{i}")
            main.account_limiter.check(f"ip:203.0.113.{i}")
        clock.now += 61
        assert services.sweeper.run_once() == 6
        assert main.global_limiter.cleanup_expired() == 0
        assert main.account_limiter.cleanup_expired() == 0
    finally:
        services.sweeper.stop()


def test_body_too_large(client, auth_headers):
    r = client.post("/prepare-account", content=b"{" + b" " * (config.MAX_BODY_BYTES + 10) + b"}",
                    headers={**auth_headers, "content-type": "application/json"})
    assert r.status_code == 413


def test_malformed_json(client, auth_headers):
    r = client.post("/prepare-account", content=b"{not json",
                    headers={**auth_headers, "content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "Validation Error"

