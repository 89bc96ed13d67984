import mongomock
import pytest
from bson import ObjectId

import search_interpreter

TIJUANA = {"latitude": 32.5149, "longitude": -117.0382}


@pytest.fixture
def provider(monkeypatch):
    def fake(prompt, schema):
        return {"search_term": "iPhone", "condition": "Nuevo", "max_price": 10000}

    monkeypatch.setattr(search_interpreter, "openai_complete", fake)


def register(client, user_id, **overrides):
    body = {"user_id": user_id, "name": user_id.title(), "email": f"{user_id}@example.com", "terms_accepted": True, **TIJUANA}
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


def test_root(client):
    assert client.get("/").json() == {"message": "Tijuana Shop backend running"}


def test_categories(client):
    ids = [c["id"] for c in client.get("/api/categories").json()]
    assert ids == ["autos", "electronica", "hogar", "ropa", "otros"]


def test_register(client):
    res = register(client, "ana")
    assert res.status_code == 200
    assert res.json()["role"] == "user"
    assert res.json()["location"] == "Tijuana"


def test_register_outside_service_area(client, db):
    res = register(client, "ana", latitude=19.4326, longitude=-99.1332)
    assert res.status_code == 403
    assert db["user"].count_documents({}) == 0


def test_register_requires_terms_and_unique_email(client):
    assert register(client, "ana", terms_accepted=False).status_code == 400
    assert register(client, "ana").status_code == 200
    assert register(client, "ana2", email="ana@example.com").status_code == 400
    assert register(client, "ana").status_code == 400


def test_product_flow(client):
    register(client, "seller")
    body = {
        "user_id": "seller", "title": "iPhone 13", "description": "Como nuevo", "price": 9000,
        "category": "electronica", "condition": "Nuevo", "location": "Zona Río",
        "images": ["https://img.example.com/iphone.png"],
    }
    res = client.post("/api/products", json=body)
    assert res.status_code == 200
    pid = res.json()["id"]

    assert client.get(f"/api/products/{pid}").json()["title"] == "iPhone 13"
    assert client.get(f"/api/products/{pid}").json()["views"] == 1
    assert [p["id"] for p in client.get("/api/products", params={"q": "iPhone"}).json()] == [pid]
    assert client.get("/api/products", params={"seller_id": "seller"}).json()[0]["id"] == pid
    assert client.get("/api/products", params={"categories": ["ropa", "hogar"]}).json() == []


def test_create_product_validation(client):
    register(client, "seller")
    body = {
        "user_id": "seller", "title": "Sofá", "description": "", "price": 10,
        "category": "hogar", "condition": "Usado", "location": "Otay", "images": [],
    }
    assert client.post("/api/products", json=body).status_code == 422
    body["images"] = ["https://img/x.png"]
    body["category"] = "barcos"
    assert client.post("/api/products", json=body).status_code == 400
    body["category"] = "hogar"
    body["user_id"] = "ghost"
    assert client.post("/api/products", json=body).status_code == 404


def test_unknown_product(client):
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404


def test_smart_search(client, make_product, provider):
    wanted = make_product(title="iPhone 12", condition="Nuevo", category="electronica", price=20000)
    make_product(title="iPhone 11", condition="Usado", category="electronica")
    make_product(title="Sofá", condition="Nuevo")

    res = client.get("/api/products", params={"q": "iPhone nuevo por menos de 10000", "smart": True})
    # price bounds are dropped while a title search is active
    assert [p["id"] for p in res.json()] == [wanted]


def test_interpret_endpoint(client, provider):
    res = client.post("/api/search/interpret", json={"query": "iPhone nuevo por menos de 10000"})
    assert res.json() == {"search_term": "iPhone", "condition": "Nuevo", "max_price": 10000}


def test_favorites_endpoints(client, make_user, make_product):
    make_user("ana")
    pid = make_product()
    res = client.post("/api/favorites/toggle", json={"user_id": "ana", "product_id": pid})
    assert res.json() == {"product_id": pid, "favorited": True}
    assert [p["id"] for p in client.get("/api/favorites/ana").json()] == [pid]
    assert client.post("/api/favorites/toggle", json={"user_id": "ghost", "product_id": pid}).status_code == 404


def test_chat_endpoints(client, make_user, make_product):
    make_user("buyer")
    make_user("seller")
    make_user("intruder")
    pid = make_product(seller_id="seller")

    chat_id = client.post("/api/chats", json={"user_id": "buyer", "product_id": pid}).json()["id"]
    assert client.post("/api/chats", json={"user_id": "buyer", "product_id": pid}).json()["id"] == chat_id
    assert client.post("/api/chats", json={"user_id": "seller", "product_id": pid}).status_code == 400

    assert client.post(f"/api/chats/{chat_id}/messages", json={"user_id": "buyer", "text": "Hola"}).status_code == 200
    assert client.post(f"/api/chats/{chat_id}/messages", json={"user_id": "buyer", "text": "  "}).status_code == 400
    assert client.post(f"/api/chats/{chat_id}/messages", json={"user_id": "intruder", "text": "x"}).status_code == 403

    messages = client.get(f"/api/chats/{chat_id}/messages", params={"user_id": "seller"}).json()
    assert [m["text"] for m in messages] == ["Hola"]
    assert client.get(f"/api/chats/{chat_id}", params={"user_id": "intruder"}).status_code == 403
    assert client.get("/api/chats", params={"user_id": "seller"}).json()[0]["last_message"]["text"] == "Hola"


def test_admin_endpoints(client, make_user):
    make_user("boss", role="admin")
    make_user("ana")

    assert client.get("/api/admin/users", params={"user_id": "ana"}).status_code == 403
    assert len(client.get("/api/admin/users", params={"user_id": "boss"}).json()) == 2

    res = client.patch("/api/admin/users/ana/role", json={"user_id": "ana", "role": "admin"})
    assert res.status_code == 403
    res = client.patch("/api/admin/users/ana/role", json={"user_id": "boss", "role": "admin"})
    assert res.json() == {"id": "ana", "role": "admin"}
    assert client.get("/api/users/ana").json()["role"] == "admin"


def test_database_diagnostics_without_connection(client, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    res = client.get("/test").json()
    assert res["backend"] == "✅ Running"
    assert res["database_url"] == "❌ Not Set"
    assert res["connection_status"] == "Not Connected"


def test_register_race_on_same_uid(client, make_user, monkeypatch):
    make_user("ana")
    # both requests passed the existence checks before either wrote
    monkeypatch.setattr(mongomock.collection.Collection, "find_one", lambda self, *args, **kwargs: None)
    res = register(client, "ana", email="ana2@example.com")
    assert res.status_code == 400
    assert res.json()["detail"] == "Account already registered"
