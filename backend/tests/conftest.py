"""
Pytest Configuration and Fixtures

Mongo is replaced by mongomock and every collaborator service by an
httpx.MockTransport, so the suite runs without network or database.
"""
import copy
import json
from typing import Any, Dict, List

import httpx
import mongomock
import pytest

from admissions.config.seed_workflows import UNDERGRADUATE_ADMISSIONS
from admissions.domain.models import SYSTEM_ACTOR, ActorContext
from admissions.engine.action_dispatcher import ActionDispatcher
from admissions.engine.definition_cache import DefinitionCache, get_definition_cache
from admissions.engine.engine import WorkflowEngine
from admissions.engine.events import StageEventBus
from admissions.repositories import mongo_client
from admissions.services.context_builder import ContextBuilder
from admissions.services.delivery_service import DeliveryService
from admissions.services.fact_sources import (
    ApplicationRecordsClient,
    DocumentServiceClient,
    PaymentServiceClient,
)
from admissions.services.workflow_service import WorkflowService


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(autouse=True)
def mongo_db(monkeypatch):
    """Fresh in-memory database with production indexes for every test"""
    client = mongomock.MongoClient(tz_aware=True)
    db = client["admissions_workflow_test"]
    monkeypatch.setattr(mongo_client, "_client", client)
    monkeypatch.setattr(mongo_client, "_database", db)
    mongo_client.create_indexes()
    get_definition_cache().clear()
    yield db
    get_definition_cache().clear()


# ============================================================================
# Actors
# ============================================================================

@pytest.fixture
def designer() -> ActorContext:
    return ActorContext(
        actor_id="designer-1",
        display_name="Workflow Designer",
        permissions=["edit_workflow", "activate_workflow", "manage_workflow_actions"]
    )


@pytest.fixture
def applicant() -> ActorContext:
    return ActorContext(actor_id="applicant-1", display_name="Applicant", permissions=[])


@pytest.fixture
def reviewer() -> ActorContext:
    return ActorContext(
        actor_id="reviewer-1",
        display_name="Committee Reviewer",
        permissions=["request_additional_info", "complete_review"]
    )


@pytest.fixture
def director() -> ActorContext:
    return ActorContext(
        actor_id="director-1",
        display_name="Admissions Director",
        permissions=["request_additional_info", "complete_review", "make_admission_decision"]
    )


# ============================================================================
# Collaborator services
# ============================================================================

class FakeFactServices:
    """
    In-memory document, payment and application records services.

    Tests mutate records/documents/payments between engine calls to
    simulate facts changing.
    """

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}
        self.documents: Dict[str, Dict[str, str]] = {}
        self.payments: Dict[str, Dict[str, str]] = {}
        self.failing = False
        self.requests: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.url.path)
        if self.failing:
            return httpx.Response(503, text="unavailable")

        parts = request.url.path.strip("/").split("/")
        application_id = parts[1]

        if len(parts) == 2:
            return httpx.Response(200, json=self.records.get(application_id, {}))
        if parts[2] == "documents":
            return httpx.Response(200, json=self.documents.get(application_id, {}))
        if parts[2] == "payments":
            status = self.payments.get(application_id, {}).get(parts[3])
            if status is None:
                return httpx.Response(404, json={"detail": "no payment"})
            return httpx.Response(200, json={"status": status})
        return httpx.Response(404)

    def context_builder(self) -> ContextBuilder:
        transport = httpx.MockTransport(self.handler)
        return ContextBuilder(
            documents=DocumentServiceClient(transport=transport),
            payments=PaymentServiceClient(transport=transport),
            records=ApplicationRecordsClient(transport=transport)
        )


class FakeDeliveryTarget:
    """Records deliveries and answers with a configurable status code"""

    def __init__(self):
        self.status_code = 202
        self.received: List[Dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.received.append({
            "url": str(request.url),
            "idempotency_key": request.headers.get("Idempotency-Key"),
            "body": json.loads(request.content),
        })
        return httpx.Response(self.status_code, json={})

    def delivery_service(self) -> DeliveryService:
        return DeliveryService(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def facts() -> FakeFactServices:
    return FakeFactServices()


@pytest.fixture
def delivery_target() -> FakeDeliveryTarget:
    return FakeDeliveryTarget()


@pytest.fixture
def dispatcher(delivery_target) -> ActionDispatcher:
    return ActionDispatcher(delivery=delivery_target.delivery_service())


@pytest.fixture
def event_bus() -> StageEventBus:
    return StageEventBus()


@pytest.fixture
def engine(facts, dispatcher, event_bus) -> WorkflowEngine:
    return WorkflowEngine(
        cache=DefinitionCache(),
        context_builder=facts.context_builder(),
        dispatcher=dispatcher,
        event_bus=event_bus
    )


# ============================================================================
# Workflows
# ============================================================================

def undergraduate_definition() -> Dict[str, Any]:
    return copy.deepcopy(UNDERGRADUATE_ADMISSIONS["definition"])


@pytest.fixture
def workflow_service() -> WorkflowService:
    return WorkflowService()


@pytest.fixture
def published_workflow(workflow_service):
    """The undergraduate template, published and active"""
    workflow = workflow_service.create_workflow(
        name=UNDERGRADUATE_ADMISSIONS["name"],
        description=UNDERGRADUATE_ADMISSIONS["description"],
        applicant_category="undergraduate",
        actor=SYSTEM_ACTOR,
        definition=undergraduate_definition()
    )
    return workflow_service.publish_workflow(workflow.workflow_id, SYSTEM_ACTOR)


@pytest.fixture
def seed_definition() -> Dict[str, Any]:
    return undergraduate_definition()


@pytest.fixture
def publish(workflow_service):
    """Publish and activate an ad-hoc definition"""

    def _publish(definition: Dict[str, Any], category: str = "test"):
        return _publish_with(workflow_service, definition, category)

    return _publish


def _publish_with(service: WorkflowService, definition: Dict[str, Any], category: str):
    workflow = service.create_workflow(
        name=f"Workflow for {category}",
        description=None,
        applicant_category=category,
        actor=SYSTEM_ACTOR,
        definition=definition
    )
    return service.publish_workflow(workflow.workflow_id, SYSTEM_ACTOR)
