"""Route tests using Flask's test client against a memory-backed store."""

import io
import json
import signal

import pytest
from flask import Flask

import app as app_module
from app import create_app, notify_subscribers, upgrade_legacy_passwords
from backends import MemoryBackend
from conftest import FlakyBackend
from defaults import ARTICLES, DEFAULT_CONFIG, PUSH_SUBSCRIPTIONS
from errors import ConfigurationError
from store import DurableStore


@pytest.fixture
def registered(client):
    resp = client.post("/auth/register", json={"name": "Chanda", "email": "chanda@muk.ac.zm", "password": "secret1"})
    assert resp.status_code == 201
    return resp.get_json()["user"]


# --- health ---

def test_health(client, store):
    data = client.get("/health").get_json()
    assert data["status"] == "ok"
    assert data["storage"] == "memory"
    assert data["articles"] == 0
    assert data["dirty"] is False


def test_unknown_route_is_json_404(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert "error" in resp.get_json()


# --- auth ---

def test_register_hides_password(client, registered):
    assert registered["email"] == "chanda@muk.ac.zm"
    assert "password" not in registered
    assert "passwordHash" not in registered
    assert "id" in registered


def test_register_stores_hash_not_password(client, store, registered):
    stored = store.find("users", email="chanda@muk.ac.zm")
    assert stored["passwordHash"] != "secret1"
    assert "password" not in stored


def test_register_duplicate_email(client, registered):
    resp = client.post("/auth/register", json={"name": "Other", "email": "chanda@muk.ac.zm", "password": "secret2"})
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "Email already registered"


@pytest.mark.parametrize("payload", [
    {"name": "A", "email": "a@muk.ac.zm"},
    {"email": "a@muk.ac.zm", "password": "secret1"},
    {"name": "A", "email": "a@muk.ac.zm", "password": "short"},
])
def test_register_validation(client, payload):
    assert client.post("/auth/register", json=payload).status_code == 400


def test_login(client, registered):
    resp = client.post("/auth/login", json={"email": "chanda@muk.ac.zm", "password": "secret1"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["user"]["id"] == registered["id"]
    assert data["session"].startswith("session_")


def test_login_wrong_password(client, registered):
    resp = client.post("/auth/login", json={"email": "chanda@muk.ac.zm", "password": "wrong-one"})
    assert resp.status_code == 401


def test_login_unknown_email(client):
    resp = client.post("/auth/login", json={"email": "ghost@muk.ac.zm", "password": "secret1"})
    assert resp.status_code == 401


def test_login_missing_fields(client):
    assert client.post("/auth/login", json={"email": "a@muk.ac.zm"}).status_code == 400


# --- users ---

def test_list_users_hides_hashes(client, registered):
    users = client.get("/users").get_json()
    assert len(users) == 1
    assert "passwordHash" not in users[0]


def test_delete_user(client, registered):
    assert client.delete(f"/users/{registered['id']}").status_code == 200
    assert client.delete(f"/users/{registered['id']}").status_code == 404
    assert client.get("/users").get_json() == []


# --- articles ---

def test_list_articles_empty(client):
    resp = client.get("/articles")
    assert resp.status_code == 200
    assert resp.get_json() == []


def test_article_lifecycle(client):
    resp = client.post("/articles", json={"title": "A", "category": "C"})
    assert resp.status_code == 201
    article_id = resp.get_json()["id"]

    article = client.get(f"/articles/{article_id}").get_json()
    assert article["id"] == article_id
    assert article["title"] == "A"
    assert article["category"] == "C"
    assert article["pdfFile"] is False

    assert client.delete(f"/articles/{article_id}").status_code == 200
    assert client.get(f"/articles/{article_id}").status_code == 404
    assert client.delete(f"/articles/{article_id}").status_code == 404


def test_create_article_requires_title_and_category(client):
    resp = client.post("/articles", json={"title": "A"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Title and category are required"


def test_create_article_with_pdf(client):
    resp = client.post(
        "/articles",
        data={"title": "A", "category": "C", "pdf": (io.BytesIO(b"%PDF-1.4 body"), "paper.pdf")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 201
    article = resp.get_json()
    assert article["pdfFile"] is True
    assert article["pdfName"] == "paper.pdf"

    download = client.get(article["pdfUrl"])
    assert download.status_code == 200
    assert download.data == b"%PDF-1.4 body"
    download.close()


def test_create_article_rejects_non_pdf(client):
    resp = client.post(
        "/articles",
        data={"title": "A", "category": "C", "pdf": (io.BytesIO(b"text"), "paper.txt")},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 400
    assert client.get("/articles").get_json() == []


def test_update_article_merges(client, sample_article):
    article_id = client.post("/articles", json=sample_article).get_json()["id"]

    resp = client.put(f"/articles/{article_id}", json={"description": "Updated"})
    assert resp.status_code == 200
    article = resp.get_json()
    assert article["description"] == "Updated"
    assert article["title"] == sample_article["title"]
    assert article["id"] == article_id


def test_update_article_not_found(client):
    assert client.put("/articles/1", json={"title": "B"}).status_code == 404


def test_update_article_empty_title(client):
    article_id = client.post("/articles", json={"title": "A", "category": "C"}).get_json()["id"]
    assert client.put(f"/articles/{article_id}", json={"title": ""}).status_code == 400


def test_article_written_through(client, backend):
    client.post("/articles", json={"title": "A", "category": "C"})
    snapshot = json.loads(backend.blob)
    assert snapshot["articles"][0]["title"] == "A"


def test_flush_failure_does_not_fail_request(uploads):
    store = DurableStore(FlakyBackend())
    app = create_app(store, uploads=uploads)
    with app.test_client() as client:
        resp = client.post("/articles", json={"title": "A", "category": "C"})
        assert resp.status_code == 201
        assert client.get("/health").get_json()["dirty"] is True


# --- config ---

def test_config_defaults(client):
    assert client.get("/config").get_json() == DEFAULT_CONFIG


def test_config_partial_update(client):
    resp = client.post("/config", json={"app_title": "New title"})
    assert resp.status_code == 200

    config = client.get("/config").get_json()
    assert config["app_title"] == "New title"
    assert config["contact_email"] == DEFAULT_CONFIG["contact_email"]


def test_config_requires_object(client):
    assert client.post("/config", json=["a"]).status_code == 400


# --- understanding ---

def test_understanding_default(client):
    assert client.get("/understanding/42").get_json() == {"summary": "", "materials": []}


def test_understanding_replaces_materials(client):
    first = {"summary": "one", "materials": [{"name": "a.pdf", "url": "/a"}, {"name": "b.pdf", "url": "/b", "size": 4}]}
    second = {"summary": "two", "materials": [{"name": "c.pdf", "url": "/c", "size": 9}]}
    client.post("/understanding/42", json=first)
    resp = client.post("/understanding/42", json=second)

    assert resp.status_code == 200
    record = client.get("/understanding/42").get_json()
    assert record == {"summary": "two", "materials": [{"name": "c.pdf", "url": "/c", "size": 9}]}
    assert list(client.get("/understanding").get_json()) == ["42"]


def test_understanding_with_uploaded_files(client):
    resp = client.post(
        "/understanding/7",
        data={"summary": "slides", "materials": [(io.BytesIO(b"a"), "a.txt"), (io.BytesIO(b"bb"), "b.txt")]},
        content_type="multipart/form-data",
    )
    assert resp.status_code == 200
    record = resp.get_json()
    assert record["summary"] == "slides"
    assert [(m["name"], m["size"]) for m in record["materials"]] == [("a.txt", 1), ("b.txt", 2)]


def test_understanding_bad_materials(client):
    assert client.post("/understanding/7", json={"materials": [{"name": "x"}]}).status_code == 400


# --- push ---

def test_push_subscribe_is_idempotent(client, store):
    payload = {"endpoint": "https://push.example.org/abc", "keys": {"p256dh": "k", "auth": "a"}}
    assert client.post("/push/subscribe", json=payload).status_code == 200
    assert client.post("/push/subscribe", json=payload).status_code == 200
    assert len(store.get(PUSH_SUBSCRIPTIONS)) == 1

    assert client.post("/push/unsubscribe", json={"endpoint": payload["endpoint"]}).status_code == 200
    assert store.get(PUSH_SUBSCRIPTIONS) == []


def test_push_requires_endpoint(client):
    assert client.post("/push/subscribe", json={"keys": {}}).status_code == 400
    assert client.post("/push/unsubscribe", json={}).status_code == 400


def test_notify_subscribers_counts(store):
    store.insert(PUSH_SUBSCRIPTIONS, {"endpoint": "https://push/1", "keys": {}})
    assert notify_subscribers(store, "New article", "A") == 1


# --- cors ---

def test_cors_allows_browser_clients(client):
    origin = "http://localhost:5173"
    resp = client.get("/articles", headers={"Origin": origin})
    assert resp.headers["Access-Control-Allow-Origin"] in ("*", origin)


# --- legacy snapshots ---

LEGACY_SNAPSHOT = json.dumps({
    "users": [{"id": 1, "name": "A", "email": "a@muk.ac.zm", "password": "plain123", "createdAt": "x"}],
    "articles": [],
})


def test_legacy_passwords_hidden_and_usable(uploads):
    backend = MemoryBackend(LEGACY_SNAPSHOT)
    store = DurableStore(backend)
    store.hydrate()
    app = create_app(store, uploads=uploads)

    with app.test_client() as client:
        users = client.get("/users").get_json()
        assert users == [{"id": 1, "name": "A", "email": "a@muk.ac.zm", "createdAt": "x"}]

        resp = client.post("/auth/login", json={"email": "a@muk.ac.zm", "password": "plain123"})
        assert resp.status_code == 200
        assert "password" not in resp.get_json()["user"]

    assert "plain123" not in backend.blob


def test_upgrade_legacy_passwords_is_idempotent():
    store = DurableStore(MemoryBackend(LEGACY_SNAPSHOT))
    store.hydrate()

    assert upgrade_legacy_passwords(store) == 1
    assert upgrade_legacy_passwords(store) == 0
    user = store.get_by_id("users", 1)
    assert "password" not in user
    assert user["passwordHash"]


# --- process entry point ---

@pytest.fixture
def no_server(monkeypatch):
    runs = []
    monkeypatch.setattr(Flask, "run", lambda self, **kwargs: runs.append(kwargs))
    return runs


def test_main_hydrates_and_registers_shutdown_flush(monkeypatch, tmp_path, no_server):
    snapshot = tmp_path / "db.json"
    snapshot.write_text(json.dumps({"articles": [{"id": 5, "title": "A"}]}))
    monkeypatch.setenv("SNAPSHOT_BACKEND", "file")
    monkeypatch.setenv("SNAPSHOT_PATH", str(snapshot))
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("FLUSH_INTERVAL", "60")
    monkeypatch.setenv("SHUTDOWN_FLUSH_TIMEOUT", "2")

    exit_hooks = []
    handlers = {}
    monkeypatch.setattr(app_module.atexit, "register", lambda fn, *args: exit_hooks.append((fn, args)))
    monkeypatch.setattr(app_module.signal, "signal", lambda signum, handler: handlers.update({signum: handler}))

    app_module.main()

    assert len(no_server) == 1
    assert handlers[signal.SIGTERM] is app_module._exit_on_signal
    (close, args), = exit_hooks
    assert args == (2.0,)

    store = close.__self__
    try:
        assert store.get(ARTICLES) == [{"id": 5, "title": "A"}]
        store.update(ARTICLES, 5, {"title": "B"})
    finally:
        assert close(*args) is True
    assert json.loads(snapshot.read_text())["articles"][0]["title"] == "B"


def test_main_refuses_to_boot_without_snapshot_url(monkeypatch, no_server):
    monkeypatch.setenv("SNAPSHOT_BACKEND", "http")
    monkeypatch.delenv("SNAPSHOT_URL", raising=False)

    with pytest.raises(ConfigurationError):
        app_module.main()
    assert no_server == []
