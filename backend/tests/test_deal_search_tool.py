"""
Tests for the search_deals tool, the tool registry and the executor.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import runtime_config
from errors import InvalidToolInputError, PersistenceError, ToolExecutionFailedError
from services.deal_store import Deal, DealQuery, InMemoryDealStore, PostgresDealStore
from tools.deal_search import DealSearchInput, execute_search_deals, format_money, format_percent
from tools.executor import ToolExecutor
from tools.registry import ToolRegistry


def _deals():
    return InMemoryDealStore(
        [
            Deal(id="d1", title="Ohio Plastics", ebitda=1_200_000, revenue=9_000_000, company_location="Columbus, OH", ebitda_margin=13.3),
            Deal(id="d2", title="Texas Logistics", ebitda=5_500_000, revenue=40_000_000, company_location="Austin, TX", ebitda_margin=13.75),
            Deal(id="d3", title="Ohio Dental Group", ebitda=350_000, revenue=2_000_000, company_location="Dayton, OH", ebitda_margin=17.5),
            Deal(id="d4", title="Stealth SaaS", ebitda=None, revenue=None, company_location=None, ebitda_margin=None),
        ]
    )


def _search(store, **filters):
    params = ToolRegistry.validate_input("search_deals", filters)
    return asyncio.run(execute_search_deals(params, store))


class TestFormatting:
    def test_money(self):
        assert format_money(1_234_567) == "$1,234,567"
        assert format_money(1234.5) == "$1,234.50"
        assert format_money(0) == "$0"
        assert format_money(None) == "N/A"

    def test_percent(self):
        assert format_percent(12.5) == "12.5%"
        assert format_percent(20.0) == "20%"
        assert format_percent(12.345678) == "12.345678%"
        assert format_percent(1234567.5) == "1234567.5%"
        assert format_percent(None) == "N/A"


class TestDealSearch:
    def test_ordered_by_ebitda_desc_missing_last(self):
        results = _search(_deals())
        assert [r["id"] for r in results] == ["d2", "d1", "d3", "d4"]

    def test_result_shape(self):
        result = _search(_deals(), id="d1")[0]
        assert result == {
            "id": "d1",
            "title": "Ohio Plastics",
            "ebitda": "$1,200,000",
            "revenue": "$9,000,000",
            "companyLocation": "Columbus, OH",
            "ebitdaMargin": "13.3%",
            "createdAt": 0,
        }

    def test_missing_values_are_na(self):
        result = _search(_deals(), id="d4")[0]
        assert result["ebitda"] == "N/A"
        assert result["revenue"] == "N/A"
        assert result["companyLocation"] == "N/A"
        assert result["ebitdaMargin"] == "N/A"

    def test_min_ebitda(self):
        results = _search(_deals(), minEbitda=1_000_000)
        assert [r["id"] for r in results] == ["d2", "d1"]

    def test_title_and_location_case_insensitive(self):
        assert [r["id"] for r in _search(_deals(), title="ohio")] == ["d1", "d3"]
        assert [r["id"] for r in _search(_deals(), companyLocation="tx")] == ["d2"]

    def test_exact_revenue_overrides_range(self):
        results = _search(_deals(), exactRevenue=2_000_000, minRevenue=10_000_000)
        assert [r["id"] for r in results] == ["d3"]

    def test_margin_range(self):
        results = _search(_deals(), minEbitdaMargin=13.5, maxEbitdaMargin=15)
        assert [r["id"] for r in results] == ["d2"]

    def test_empty_result_is_success(self):
        assert _search(_deals(), minEbitda=100_000_000) == []

    def test_limit_capped(self):
        store = InMemoryDealStore(Deal(id=f"d{i}", title="x", ebitda=float(i)) for i in range(80))
        assert len(_search(store)) == 10
        assert len(_search(store, limit=100)) == runtime_config.tool_result_max == 50
        assert len(_search(store, limit=3)) == 3


class TestDealSearchInput:
    def test_unknown_field_rejected(self):
        with pytest.raises(InvalidToolInputError) as exc_info:
            ToolRegistry.validate_input("search_deals", {"minimumEbitda": 5})
        assert exc_info.value.context["tool"] == "search_deals"

    def test_wrong_type_rejected(self):
        with pytest.raises(InvalidToolInputError):
            ToolRegistry.validate_input("search_deals", {"minEbitda": "lots"})

    def test_non_positive_limit_rejected(self):
        with pytest.raises(InvalidToolInputError):
            ToolRegistry.validate_input("search_deals", {"limit": 0})

    def test_non_object_rejected(self):
        with pytest.raises(InvalidToolInputError):
            ToolRegistry.validate_input("search_deals", ["minEbitda", 5])

    def test_to_query(self):
        params = DealSearchInput.model_validate({"minEbitda": 5, "companyLocation": "OH", "limit": 99})
        query = params.to_query(50)
        assert query.min_ebitda == 5
        assert query.company_location == "OH"
        assert query.limit == 50


class TestPostgresDealQuery:
    def test_no_filters(self):
        sql, args = PostgresDealStore.build_query(DealQuery(limit=10))
        assert "WHERE" not in sql
        assert sql.endswith("ORDER BY ebitda DESC NULLS LAST LIMIT $1")
        assert args == [10]

    def test_exact_revenue_replaces_range(self):
        sql, args = PostgresDealStore.build_query(
            DealQuery(exact_revenue=5.0, min_revenue=1.0, max_revenue=9.0, title="ohio", limit=5)
        )
        assert "revenue = $2" in sql
        assert "revenue >=" not in sql
        assert "title ILIKE '%' || $1 || '%'" in sql
        assert args == ["ohio", 5.0, 5]

    def test_like_wildcards_are_literal(self):
        sql, args = PostgresDealStore.build_query(DealQuery(title="50%_off", company_location="C:\\TX", limit=5))
        assert "title ILIKE '%' || $1 || '%' ESCAPE '\\'" in sql
        assert "company_location ILIKE '%' || $2 || '%' ESCAPE '\\'" in sql
        assert args == ["50\\%\\_off", "C:\\\\TX", 5]

    def test_search_wraps_driver_errors(self):
        db = MagicMock()
        db.fetch = AsyncMock(side_effect=OSError("connection reset"))
        with pytest.raises(PersistenceError):
            asyncio.run(PostgresDealStore(db).search(DealQuery()))

    def test_rows_become_deals(self):
        db = MagicMock()
        db.fetch = AsyncMock(
            return_value=[
                {"id": "d1", "title": "T", "ebitda": 1.0, "revenue": 2.0, "company_location": "OH", "ebitda_margin": 50.0, "created_at": 3}
            ]
        )
        deals = asyncio.run(PostgresDealStore(db).search(DealQuery()))
        assert deals[0].company_location == "OH"
        assert deals[0].created_at == 3


class TestRegistry:
    def test_schema_uses_wire_names(self):
        schema = ToolRegistry.get_tools_schema()
        assert len(schema) == 1
        fn = schema[0]["function"]
        assert fn["name"] == "search_deals"
        props = fn["parameters"]["properties"]
        assert "minEbitda" in props
        assert "min_ebitda" not in props
        assert fn["parameters"]["additionalProperties"] is False

    def test_tools_section_lists_tool(self):
        section = ToolRegistry.generate_tools_section()
        assert "Deal Search (search_deals)" in section


class TestToolExecutor:
    def test_runs_with_injected_store(self):
        executor = ToolExecutor(deal_store=_deals(), unrelated=object())
        results = asyncio.run(executor.execute("search_deals", {"id": "d2"}))
        assert [r["id"] for r in results] == ["d2"]

    def test_unknown_tool(self):
        with pytest.raises(InvalidToolInputError):
            asyncio.run(ToolExecutor().execute("drop_tables", {}))
        assert ToolExecutor().is_known("drop_tables") is False
        assert ToolExecutor().is_known("search_deals") is True

    def test_invalid_input_never_reaches_store(self):
        store = MagicMock()
        store.search = AsyncMock()
        with pytest.raises(InvalidToolInputError):
            asyncio.run(ToolExecutor(deal_store=store).execute("search_deals", {"bogus": 1}))
        store.search.assert_not_awaited()

    def test_store_failure_wrapped_and_not_retried(self):
        store = MagicMock()
        store.search = AsyncMock(side_effect=PersistenceError("deals table missing"))
        with pytest.raises(ToolExecutionFailedError) as exc_info:
            asyncio.run(ToolExecutor(deal_store=store).execute("search_deals", {}))
        assert store.search.await_count == 1
        assert exc_info.value.context == {"tool": "search_deals"}
        assert exc_info.value.details == "deals table missing"
