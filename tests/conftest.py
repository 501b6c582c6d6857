import pytest

from app import create_app

TEST_PIN = "4321"


@pytest.fixture()
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///" + str(tmp_path / "test.db"),
        "UPLOADS_ROOT": str(tmp_path / "uploads"),
        "PIN_CODE": TEST_PIN,
    })
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def auth_headers(client):
    response = client.post("/auth/login", json={"pin": TEST_PIN})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.get_json()['token']}"}


@pytest.fixture()
def store(app):
    return app.extensions["blob_store"]
