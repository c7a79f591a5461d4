"""
Shared fixtures. The environment is configured before the application is
imported so the settings object picks up the test database.
"""

import os
import tempfile

_TMP_DIR = tempfile.mkdtemp(prefix="lifescanner-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/test.db"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["CATEGORY_DELAY_SECONDS"] = "0"
os.environ["FEEDS_CONFIG_PATH"] = os.path.join(_TMP_DIR, "feeds.yaml")
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TELEGRAM_WEBHOOK_SECRET"] = ""

from datetime import datetime, timedelta

import httpx
import pytest

from lifescanner.database import AsyncSessionLocal, create_db_and_tables, drop_db_and_tables
from lifescanner.main import app
from lifescanner.models import NewsArticle

@pytest.fixture(autouse=True)
async def fresh_db():
    await drop_db_and_tables()
    await create_db_and_tables()
    yield

@pytest.fixture
async def api():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

async def signup(api, email="reader@example.com", password="correct-horse", profile="student", name="Reader"):
    response = await api.post(
        "/api/auth/signup",
        json={"email": email, "password": password, "profile": profile, "name": name},
    )
    assert response.status_code == 200, response.text
    return response.json()

async def auth_headers(api, **kwargs):
    data = await signup(api, **kwargs)
    return {"Authorization": f"Bearer {data['token']}"}

def make_article(index, category="technology", **overrides):
    values = {
        "title": f"Story {index}",
        "description": f"Description {index}",
        "url": f"https://news.test/{category}/{index}",
        "source": "Test Wire",
        "category": category,
        "published_at": datetime(2025, 1, 1) + timedelta(hours=index),
        "summary": f"Summary {index}",
        "impact_student": f"Students {index}",
        "impact_employee": f"Employees {index}",
        "impact_investor": f"Investors {index}",
        "impact_homemaker": f"Homemakers {index}",
    }
    values.update(overrides)
    return NewsArticle(**values)

async def store(*articles):
    async with AsyncSessionLocal() as db:
        for article in articles:
            db.add(article)
        await db.commit()
