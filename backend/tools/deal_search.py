"""
Deal Search tool - filtered, read-only lookup over deal records.

Filters combine with AND. Text filters are case-insensitive substring
matches; an exact revenue overrides the revenue range. Results come back
highest EBITDA first, capped at tool_result_max, with money and margin
fields pre-formatted for display.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from logging_config import log_tool
from services.deal_store import Deal, DealQuery, DealStore

logger = logging.getLogger(__name__)


class DealSearchInput(BaseModel):
    """Input schema for search_deals (field names as the model emits them)."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: Optional[str] = Field(default=None, description="Specific deal ID to search for")
    title: Optional[str] = Field(default=None, description="Search for deals containing this text in the title")
    min_ebitda: Optional[float] = Field(
        default=None, alias="minEbitda", description="Minimum EBITDA amount (e.g., 350000 for $350k)"
    )
    max_ebitda: Optional[float] = Field(default=None, alias="maxEbitda", description="Maximum EBITDA amount")
    min_revenue: Optional[float] = Field(default=None, alias="minRevenue", description="Minimum revenue amount")
    max_revenue: Optional[float] = Field(default=None, alias="maxRevenue", description="Maximum revenue amount")
    exact_revenue: Optional[float] = Field(default=None, alias="exactRevenue", description="Exact revenue amount")
    company_location: Optional[str] = Field(
        default=None, alias="companyLocation", description="Company location (city, state, or country)"
    )
    min_ebitda_margin: Optional[float] = Field(
        default=None, alias="minEbitdaMargin", description="Minimum EBITDA margin percentage"
    )
    max_ebitda_margin: Optional[float] = Field(
        default=None, alias="maxEbitdaMargin", description="Maximum EBITDA margin percentage"
    )
    limit: int = Field(default=10, ge=1, description="Maximum number of results to return")

    def to_query(self, max_results: int) -> DealQuery:
        return DealQuery(
            id=self.id,
            title=self.title,
            min_ebitda=self.min_ebitda,
            max_ebitda=self.max_ebitda,
            min_revenue=self.min_revenue,
            max_revenue=self.max_revenue,
            exact_revenue=self.exact_revenue,
            company_location=self.company_location,
            min_ebitda_margin=self.min_ebitda_margin,
            max_ebitda_margin=self.max_ebitda_margin,
            limit=min(self.limit, max_results),
        )


def format_money(value: Optional[float]) -> str:
    """1234567 -> "$1,234,567"; 1234.5 -> "$1,234.50"; None -> "N/A"."""
    if value is None:
        return "N/A"
    if float(value).is_integer():
        return f"${int(value):,}"
    return f"${value:,.2f}"


def format_percent(value: Optional[float]) -> str:
    """The stored value as-is: 12.5 -> "12.5%"; 20.0 -> "20%"; None -> "N/A"."""
    if value is None:
        return "N/A"
    if float(value).is_integer():
        return f"{int(value)}%"
    return f"{value}%"


def format_deal(deal: Deal) -> Dict[str, Any]:
    return {
        "id": deal.id,
        "title": deal.title,
        "ebitda": format_money(deal.ebitda),
        "revenue": format_money(deal.revenue),
        "companyLocation": deal.company_location or "N/A",
        "ebitdaMargin": format_percent(deal.ebitda_margin),
        "createdAt": deal.created_at,
    }


async def execute_search_deals(params: DealSearchInput, deal_store: DealStore) -> List[Dict[str, Any]]:
    from config import runtime_config

    query = params.to_query(runtime_config.tool_result_max)
    filters = {k: v for k, v in params.model_dump(by_alias=True, exclude_none=True).items() if k != "limit"}
    log_tool(logger, "search_deals", "start", filters=filters, limit=query.limit)

    deals = await deal_store.search(query)

    log_tool(logger, "search_deals", "end", results=len(deals))
    return [format_deal(d) for d in deals]
