"""TTL cache tiers and the services layered on them."""

from datetime import datetime
from datetime import timedelta

import pytest

from orgpilot.services.cache import component_cache
from orgpilot.services.cache import inventory_cache
from orgpilot.services.component_cache import ComponentCacheService
from orgpilot.services.component_cache import ComponentNotFound
from orgpilot.services.component_cache import InvalidComponentName
from orgpilot.services.org_context import INVENTORY_TTL_S
from orgpilot.services.org_context import OrgContextService

T0 = datetime(2024, 1, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Counter:
    def __init__(self, value="fresh"):
        self.calls = 0
        self.value = value

    async def __call__(self):
        self.calls += 1
        return {"value": self.value, "call": self.calls}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.mark.asyncio
async def test_entry_served_until_ttl_boundary(session_factory, make_org, clock):
    org = make_org()
    cache = inventory_cache(session_factory, clock)
    fetch = Counter()

    first = await cache.get_or_fetch(org.id, "objects", 60, fetch)
    clock.advance(seconds=59, milliseconds=999)
    second = await cache.get_or_fetch(org.id, "objects", 60, fetch)

    assert first == second == {"value": "fresh", "call": 1}
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_entry_exactly_at_expiry_is_still_valid(session_factory, make_org, clock):
    org = make_org()
    cache = inventory_cache(session_factory, clock)
    cache.store(org.id, "flows", ["a"], 60)

    clock.advance(seconds=60)

    assert cache.lookup(org.id, "flows").data == ["a"]


@pytest.mark.asyncio
async def test_expired_entry_is_refetched_and_overwritten(session_factory, make_org, clock):
    org = make_org()
    cache = inventory_cache(session_factory, clock)
    fetch = Counter()

    await cache.get_or_fetch(org.id, "objects", 60, fetch)
    clock.advance(seconds=60, milliseconds=1)
    refreshed = await cache.get_or_fetch(org.id, "objects", 60, fetch)

    assert refreshed["call"] == 2
    assert fetch.calls == 2
    # Upsert keeps a single row for the key with the new fetch time.
    assert cache.lookup(org.id, "objects").fetched_at == clock.now


@pytest.mark.asyncio
async def test_invalidate_forces_refetch(session_factory, make_org, clock):
    org = make_org()
    cache = component_cache(session_factory, clock)
    fetch = Counter()

    await cache.get_or_fetch(org.id, "apex_class:Foo", 3600, fetch)
    cache.invalidate(org.id, "apex_class:Foo")
    await cache.get_or_fetch(org.id, "apex_class:Foo", 3600, fetch)

    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_entries_are_scoped_per_org(session_factory, make_org, clock):
    first_org = make_org()
    second_org = make_org(name="Acme UAT")
    cache = inventory_cache(session_factory, clock)

    cache.store(first_org.id, "objects", ["Account"], 60)

    assert cache.lookup(second_org.id, "objects") is None


@pytest.mark.asyncio
async def test_tiers_do_not_share_keys(session_factory, make_org, clock):
    org = make_org()
    inventory = inventory_cache(session_factory, clock)
    components = component_cache(session_factory, clock)

    inventory.store(org.id, "objects", ["Account"], 60)

    assert components.lookup(org.id, "objects") is None


# ---------------------------------------------------------------------------
# Services on top of the tiers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_org_summary_uses_inventory_cache(session_factory, make_org, salesforce_api, sf_client, clock):
    org = make_org()
    salesforce_api.on(
        "GET",
        "/sobjects",
        {
            "sobjects": [
                {"name": "Account", "label": "Account", "custom": False, "queryable": True},
                {"name": "Invoice__c", "label": "Invoice", "custom": True, "queryable": True},
                {"name": "AccountHistory", "label": "History", "custom": False, "queryable": False},
            ]
        },
    )
    salesforce_api.on(
        "GET",
        "/query",
        {"totalSize": 2, "records": [{"Id": "01p1", "Name": "InvoiceService"}, {"Id": "01p2", "Name": "Util"}]},
        q="FROM ApexClass",
    )
    service = OrgContextService(org.id, sf_client, inventory_cache(session_factory, clock))

    summary = await service.build_org_summary()
    again = await service.build_org_summary()

    assert summary == again
    assert "Custom Objects (1):" in summary
    assert "Invoice__c (Invoice)" in summary
    assert "Standard Objects: 1 queryable" in summary
    assert "Apex Classes (2):" in summary
    assert len([r for r in salesforce_api.requests if r.url.path.endswith("/sobjects")]) == 1


@pytest.mark.asyncio
async def test_org_summary_survives_failing_section(session_factory, make_org, salesforce_api, sf_client, clock):
    org = make_org()
    salesforce_api.on("GET", "/sobjects", {"sobjects": []}, status=500)
    service = OrgContextService(org.id, sf_client, inventory_cache(session_factory, clock))

    summary = await service.build_org_summary()

    assert summary.startswith("Standard Objects: 0 queryable")


def test_inventory_ttls():
    assert INVENTORY_TTL_S["objects"] == 86400
    assert INVENTORY_TTL_S["flows"] == 21600
    assert INVENTORY_TTL_S["apex_classes"] == 21600
    assert INVENTORY_TTL_S["permission_sets"] == 43200


@pytest.mark.asyncio
async def test_component_lookup_caches_body(session_factory, make_org, salesforce_api, sf_client, clock):
    org = make_org()
    salesforce_api.on(
        "GET",
        "/tooling/query",
        {"records": [{"Id": "01pX", "Name": "InvoiceService", "Body": "public class InvoiceService {}"}]},
        q="FROM ApexClass",
    )
    service = ComponentCacheService(org.id, sf_client, component_cache(session_factory, clock))

    first = await service.get_apex_class("InvoiceService")
    second = await service.get_apex_class("InvoiceService")

    assert first == second == {"id": "01pX", "name": "InvoiceService", "body": "public class InvoiceService {}"}
    assert len(salesforce_api.queries("FROM ApexClass")) == 1


@pytest.mark.asyncio
async def test_component_not_found(session_factory, make_org, sf_client, clock):
    org = make_org()
    service = ComponentCacheService(org.id, sf_client, component_cache(session_factory, clock))

    with pytest.raises(ComponentNotFound, match='Apex class not found: "Missing"'):
        await service.get_apex_class("Missing")


@pytest.mark.asyncio
async def test_component_name_validated_before_remote_call(
    session_factory, make_org, salesforce_api, sf_client, clock
):
    org = make_org()
    service = ComponentCacheService(org.id, sf_client, component_cache(session_factory, clock))

    with pytest.raises(InvalidComponentName):
        await service.get_apex_class("Foo' OR Name != '")

    assert salesforce_api.requests == []
