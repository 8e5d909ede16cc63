"""Tests for the source adapters against recorded payloads."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from regulatory_monitor.adapters import (
    CDCFoodSafetyAdapter,
    EPAEchoAdapter,
    FederalRegisterAdapter,
    FSISRecallAdapter,
    OpenFDAEnforcementAdapter,
    RegulationsGovAdapter,
    RSSFeedAdapter,
    build_adapter,
)
from regulatory_monitor.errors import AuthError, ConfigurationError, ParseError

SINCE = datetime(2025, 1, 1, tzinfo=timezone.utc)
FSIS_FORMATS = ("%a, %m/%d/%Y - %H:%M", "%m/%d/%Y - %H:%M", "%m/%d/%Y")


@pytest.mark.asyncio
async def test_openfda_maps_enforcement_records(make_descriptor, mock_http, fixture_text):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=fixture_text("openfda_enforcement.json"))

    descriptor = make_descriptor("FDA", "openfda_enforcement", credential_env="FDA_API_KEY")
    adapter = OpenFDAEnforcementAdapter(descriptor, mock_http(handler), environ={"FDA_API_KEY": "k3y"})

    items = await adapter.fetch(SINCE, limit=50)

    assert [item.fields.external_id for item in items] == ["F-0001-2025", "F-0002-2025"]
    first = items[0]
    assert first.fields.title.startswith("Organic Baby Spinach")
    assert first.fields.summary == "Potential contamination with Listeria monocytogenes."
    assert first.fields.published == "20250110"
    assert first.payload["recalling_firm"] == "Green Fields Farms LLC"

    params = requests[0].url.params
    assert params["search"].startswith("report_date:[20250101 TO ")
    assert params["api_key"] == "k3y"
    assert params["limit"] == "50"


@pytest.mark.asyncio
async def test_openfda_treats_404_as_no_results(make_descriptor, mock_http):
    client = mock_http(lambda request: httpx.Response(404, json={"error": {"code": "NOT_FOUND"}}))
    adapter = OpenFDAEnforcementAdapter(make_descriptor(), client)

    assert await adapter.fetch(SINCE, limit=10) == []


@pytest.mark.asyncio
async def test_openfda_paginates_with_skip(make_descriptor, mock_http):
    skips = []

    def handler(request: httpx.Request) -> httpx.Response:
        skip = int(request.url.params["skip"])
        skips.append(skip)
        records = [{"recall_number": f"F-{skip + n}", "product_description": f"Product {skip + n}"} for n in range(2)]
        return httpx.Response(200, json={"meta": {"results": {"total": 4}}, "results": records})

    adapter = OpenFDAEnforcementAdapter(make_descriptor(), mock_http(handler))
    adapter.page_size = 2

    items = await adapter.fetch(None, limit=10)

    assert skips == [0, 2]
    assert [item.fields.external_id for item in items] == ["F-0", "F-1", "F-2", "F-3"]


@pytest.mark.asyncio
async def test_openfda_missing_results_is_parse_error(make_descriptor, mock_http):
    adapter = OpenFDAEnforcementAdapter(make_descriptor(), mock_http(lambda request: httpx.Response(200, json={})))

    with pytest.raises(ParseError):
        await adapter.fetch(SINCE, limit=10)


@pytest.mark.asyncio
async def test_fsis_reads_native_dates_and_filters_by_since(make_descriptor, mock_http, fixture_text):
    client = mock_http(lambda request: httpx.Response(200, text=fixture_text("fsis_recalls.xml")))
    descriptor = make_descriptor("FSIS", "fsis_rss", date_formats=FSIS_FORMATS)

    items = await FSISRecallAdapter(descriptor, client).fetch(SINCE, limit=10)

    assert len(items) == 2
    assert items[0].fields.external_id is None
    assert items[0].fields.published == "Thu, 01/09/2025 - 12:00"
    assert "ground beef" in items[0].fields.summary
    assert items[1].fields.title == "Prairie Poultry Recalls Chicken Nuggets Due to Misbranding"


@pytest.mark.asyncio
async def test_fsis_malformed_document_is_parse_error(make_descriptor, mock_http):
    client = mock_http(lambda request: httpx.Response(200, text="<html><body>Access denied</body>"))
    adapter = FSISRecallAdapter(make_descriptor("FSIS", "fsis_rss"), client)

    with pytest.raises(ParseError):
        await adapter.fetch(SINCE, limit=10)


@pytest.mark.asyncio
async def test_fsis_auth_failure_propagates(make_descriptor, mock_http):
    adapter = FSISRecallAdapter(make_descriptor("FSIS", "fsis_rss"), mock_http(lambda request: httpx.Response(403)))

    with pytest.raises(AuthError):
        await adapter.fetch(SINCE, limit=10)


@pytest.mark.asyncio
async def test_cdc_keys_items_by_guid(make_descriptor, mock_http, fixture_text):
    client = mock_http(lambda request: httpx.Response(200, text=fixture_text("cdc_food_safety.xml")))

    items = await CDCFoodSafetyAdapter(make_descriptor("CDC", "cdc_rss"), client).fetch(SINCE, limit=10)

    assert [item.fields.external_id for item in items] == [
        "cdc-outbreak-2024-cucumbers",
        "cdc-outbreak-2024-deli",
    ]
    assert items[1].fields.summary == "Listeria Outbreak Linked to Deli Meats"


@pytest.mark.asyncio
async def test_cdc_respects_limit(make_descriptor, mock_http, fixture_text):
    client = mock_http(lambda request: httpx.Response(200, text=fixture_text("cdc_food_safety.xml")))

    items = await CDCFoodSafetyAdapter(make_descriptor("CDC", "cdc_rss"), client).fetch(None, limit=1)

    assert len(items) == 1


@pytest.mark.asyncio
async def test_epa_reads_nested_case_results(make_descriptor, mock_http):
    requests = []
    body = {
        "Results": {
            "Message": "Success",
            "Cases": [
                {
                    "CaseNumber": "06-2025-0001",
                    "FacilityName": "Riverside Chemical Plant",
                    "ViolationTypes": "CAA violation",
                    "SettlementDate": "01/08/2025",
                }
            ],
        }
    }

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=body)

    descriptor = make_descriptor("EPA", "epa_echo", params={"query": {"p_med": "CAA"}})
    items = await EPAEchoAdapter(descriptor, mock_http(handler)).fetch(SINCE, limit=5)

    assert len(items) == 1
    assert items[0].fields.title == "EPA Enforcement: Riverside Chemical Plant"
    assert items[0].fields.external_id == "06-2025-0001"
    assert items[0].fields.published == "01/08/2025"
    assert requests[0].url.params["start_date"] == "2025-01-01"
    assert requests[0].url.params["p_med"] == "CAA"


@pytest.mark.asyncio
async def test_epa_without_results_is_parse_error(make_descriptor, mock_http):
    client = mock_http(lambda request: httpx.Response(200, json={"Error": "service busy"}))

    with pytest.raises(ParseError):
        await EPAEchoAdapter(make_descriptor("EPA", "epa_echo"), client).fetch(SINCE, limit=5)


@pytest.mark.asyncio
async def test_federal_register_follows_pages(make_descriptor, mock_http):
    pages = []

    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        pages.append(request.url.params.get_list("conditions[agencies][]"))
        document = {
            "document_number": f"2025-0{page}",
            "title": f"Food Labeling Rule {page}",
            "abstract": "Amends labeling requirements.",
            "publication_date": "2025-01-0%s" % page,
            "html_url": f"https://www.federalregister.gov/d/2025-0{page}",
            "agencies": [{"name": "Food and Drug Administration"}],
        }
        return httpx.Response(200, json={"count": 2, "total_pages": 2, "results": [document]})

    descriptor = make_descriptor(
        "Federal Register",
        "federal_register",
        params={"agencies": ["food-and-drug-administration", "environmental-protection-agency"], "per_page": 1},
    )
    items = await FederalRegisterAdapter(descriptor, mock_http(handler)).fetch(SINCE, limit=10)

    assert [item.fields.external_id for item in items] == ["2025-01", "2025-02"]
    assert items[0].fields.agency == "Food and Drug Administration"
    assert pages[0] == ["food-and-drug-administration", "environmental-protection-agency"]


@pytest.mark.asyncio
async def test_regulations_gov_uses_demo_key_and_follows_next_page(make_descriptor, mock_http):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        page = int(request.url.params["page[number]"])
        data = [
            {
                "id": f"FDA-2025-N-000{page}",
                "attributes": {
                    "title": f"Notice {page}",
                    "agencyId": "FDA",
                    "postedDate": "2025-01-0%sT05:00:00Z" % page,
                },
            }
        ]
        return httpx.Response(200, json={"data": data, "meta": {"hasNextPage": page < 2}})

    descriptor = make_descriptor(
        "Regulations.gov",
        "regulations_gov",
        credential_env="REGULATIONS_GOV_API_KEY",
        params={"agency_ids": ["FDA", "EPA"], "page_size": 2},
    )
    adapter = RegulationsGovAdapter(descriptor, mock_http(handler), environ={})

    items = await adapter.fetch(SINCE, limit=10)

    assert [item.fields.external_id for item in items] == ["FDA-2025-N-0001", "FDA-2025-N-0002"]
    assert items[0].fields.url == "https://www.regulations.gov/document/FDA-2025-N-0001"
    assert seen[0].headers["X-Api-Key"] == "DEMO_KEY"
    assert seen[0].url.params["page[size]"] == "5"
    assert seen[0].url.params["filter[agencyId]"] == "FDA,EPA"


@pytest.mark.asyncio
async def test_regulations_gov_without_data_is_parse_error(make_descriptor, mock_http):
    client = mock_http(lambda request: httpx.Response(200, text=json.dumps({"errors": []})))
    adapter = RegulationsGovAdapter(make_descriptor("Regulations.gov", "regulations_gov"), client)

    with pytest.raises(ParseError):
        await adapter.fetch(SINCE, limit=10)


@pytest.mark.asyncio
async def test_rss_feed_keyword_filter_and_guid(make_descriptor, mock_http, fixture_text):
    client = mock_http(lambda request: httpx.Response(200, text=fixture_text("cdc_food_safety.xml")))
    descriptor = make_descriptor("State Alerts", "rss_feed", params={"keywords": ["listeria"], "use_guid": True})

    items = await RSSFeedAdapter(descriptor, client).fetch(None, limit=10)

    assert len(items) == 1
    assert items[0].fields.external_id == "cdc-outbreak-2024-deli"


def test_build_adapter_resolves_registry(make_descriptor):
    assert isinstance(build_adapter(make_descriptor("CDC", "cdc_rss")), CDCFoodSafetyAdapter)

    with pytest.raises(ConfigurationError):
        build_adapter(make_descriptor("X", "no_such_adapter"))
