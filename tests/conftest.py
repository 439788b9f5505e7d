import pytest

from app import create_app
from extensions import db
from storage import get_store


def make_wallet(n: int) -> str:
    return f"0x{n:040x}"


@pytest.fixture
def make_app(tmp_path):
    created = []

    def _make(**overrides):
        config = {
            "TESTING": True,
            "WHITELIST_STORE": "sql",
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SQLALCHEMY_ENGINE_OPTIONS": {},
            "WHITELIST_DATA_DIR": str(tmp_path / "data"),
            "RATELIMIT_ENABLED": False,
            "WHITELIST_REQUIRE_TASKS": False,
            "TASK_VERIFY_DELAY_SECONDS": 15,
            "TELEGRAM_BOT_TOKEN": "",
            "PUBLIC_BASE_URL": "",
        }
        config.update(overrides)
        application = create_app(config)
        created.append(application)
        return application

    yield _make

    for application in created:
        if application.config["WHITELIST_STORE"] == "sql" and "sqlalchemy" in application.extensions:
            with application.app_context():
                db.session.remove()
                db.drop_all()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def register(client):
    def _register(wallet, referral_code=None):
        body = {"walletAddress": wallet}
        if referral_code is not None:
            body["referralCode"] = referral_code
        return client.post("/api/registerWallet", json=body)

    return _register


@pytest.fixture
def with_store(app):
    """Run fn(store) inside a fresh app context."""

    def _run(fn):
        with app.app_context():
            return fn(get_store())

    return _run
