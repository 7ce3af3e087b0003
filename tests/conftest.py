# conftest.py
import os
import uuid

# The app-level engine must never touch a file database during tests.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from viewforge import models  # noqa: F401  registers tables on Base.metadata
from viewforge.auth import CurrentUser
from viewforge.db import Base
from viewforge.errors import GenerationError
from viewforge.features import ColorFeature, ExtractedFeatures
from viewforge.generator import GeneratedImage
from viewforge.ledger import CreditLedger
from viewforge.models import Product
from viewforge.settings import settings
from viewforge.storage import UploadResult
from viewforge.workflow import ProgressiveWorkflowHandler, drain_background_tasks

STARTING_CREDITS = 20


# ===================================================================
# Fakes for the external services
# ===================================================================

class FakeImageGenerator:
    """Records every call; raises GenerationError for views listed in `fail_views`."""

    def __init__(self, fail_views=()):
        self.fail_views = set(fail_views)
        self.calls = []

    async def generate(
        self,
        prompt,
        *,
        view,
        reference_image=None,
        additional_reference_image=None,
        structural_reference=None,
        logo_image=None,
        style="photorealistic",
        options=None,
    ):
        self.calls.append({
            "prompt": prompt,
            "view": view,
            "reference_image": reference_image,
            "additional_reference_image": additional_reference_image,
            "structural_reference": structural_reference,
            "logo_image": logo_image,
            "options": options,
        })
        if view in self.fail_views:
            raise GenerationError(f"Failed to generate {view} view", view=view)
        return GeneratedImage(url=f"data:image/png;base64,{view}{len(self.calls)}", model="fake-image-model")

    def views_called(self):
        return [c["view"] for c in self.calls]


class FakeObjectStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []

    async def upload(self, source_url, *, project_id=None, preset="original", preserve_original=True):
        self.uploads.append({
            "source_url": source_url,
            "project_id": project_id,
            "preset": preset,
            "preserve_original": preserve_original,
        })
        if self.fail:
            return UploadResult(success=False, error="storage unavailable")
        url = f"https://cdn.example.com/{project_id}/{len(self.uploads)}.png"
        return UploadResult(success=True, url=url, thumbnail_url=url + "?w=256")


class FakeFeatureExtractor:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    async def analyze(self, image_url):
        self.calls.append(image_url)
        if self.fail:
            raise RuntimeError("vision model unavailable")
        return ExtractedFeatures(
            colors=[ColorFeature(hex="#1F2A44", name="navy", usage="body")],
            materials=["canvas", "leather"],
            key_elements=["front zipper pocket"],
            description="A navy canvas backpack with leather trim",
        )


# ===================================================================
# Fixtures
# ===================================================================

@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "PERSIST_RETRY_DELAY_SECONDS", 0.0)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await drain_background_tasks()
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def user():
    return CurrentUser(id=uuid.uuid4(), email="maker@example.com")


@pytest.fixture
def other_user():
    return CurrentUser(id=uuid.uuid4(), email="someone-else@example.com")


@pytest.fixture
async def product(db, user):
    product = Product(id=uuid.uuid4(), owner_id=user.id, name="Trail backpack", assets={})
    db.add(product)
    await db.commit()
    return product


@pytest.fixture
async def ledger(db, user):
    ledger = CreditLedger(db, user.id)
    await ledger.grant(STARTING_CREDITS)
    return ledger


@pytest.fixture
def generator():
    return FakeImageGenerator()


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def extractor():
    return FakeFeatureExtractor()


@pytest.fixture
def make_workflow(db, generator, store, extractor, session_factory):
    def factory(user, **overrides):
        kwargs = dict(
            db=db,
            user=user,
            generator=generator,
            store=store,
            extractor=extractor,
            session_factory=session_factory,
        )
        kwargs.update(overrides)
        return ProgressiveWorkflowHandler(**kwargs)
    return factory


@pytest.fixture
def workflow(make_workflow, user, ledger):
    return make_workflow(user, ledger=ledger)


@pytest.fixture
def phases(workflow, product):
    """Drives a product through the phases; each step settles background work."""

    class Phases:
        async def front(self, prompt="A navy canvas backpack", **kwargs):
            result = await workflow.generate_front_view(product.id, prompt, **kwargs)
            await drain_background_tasks()
            assert result.success, result.error
            return result

        async def approved(self, **kwargs):
            front = await self.front(**kwargs)
            decision = await workflow.handle_decision(front.approval_id, "approve")
            assert decision.success, decision.error
            return front

        async def remaining(self, **kwargs):
            front = await self.approved(**kwargs)
            remaining = await workflow.generate_remaining_views(front.approval_id, front.front_view_url)
            assert remaining.success, remaining.error
            return front, remaining

    return Phases()


@pytest.fixture(scope="module")
def api_services():
    # A failing extractor keeps background extraction off the app's shared in-memory connection.
    return {
        "generator": FakeImageGenerator(),
        "store": FakeObjectStore(),
        "extractor": FakeFeatureExtractor(fail=True),
    }
