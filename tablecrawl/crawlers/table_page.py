from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from ..lifecycle import CrawlLifecycle
from ..models import FetchMode, FetchResult, RenderOptions
from ..readiness import ReadinessCheck, all_of, challenge_cleared, table_present


def _cell_text(cell: Any) -> str:
    return cell.get_text(" ", strip=True)


def _parse_table(index: int, table: Any) -> Dict[str, Any]:
    rows = table.find_all("tr")
    headers: List[str] = []
    body = rows
    if rows:
        headers = [t for t in (_cell_text(c) for c in rows[0].find_all(["th", "td"])) if t]
        body = rows[1:]
    parsed_rows = []
    for row in body:
        cells = [_cell_text(c) for c in row.find_all(["td", "th"])]
        if cells and any(cells):
            parsed_rows.append(cells)
    return {"index": index, "headers": headers, "rows": parsed_rows}


def extract_tables(
    document: Any,
    selector: Optional[str] = None,
    min_headers: int = 3,
    min_rows: int = 3,
) -> List[Dict[str, Any]]:
    """Pull header/row tables out of a parsed document.

    Tables matching ``selector`` are kept when they have any headers and rows.
    Without matches, every table is considered and layout tables are filtered
    out by the ``min_headers``/``min_rows`` thresholds.
    """
    tables: List[Dict[str, Any]] = []
    if selector:
        for index, table in enumerate(document.select(selector)):
            parsed = _parse_table(index, table)
            if parsed["headers"] and parsed["rows"]:
                tables.append(parsed)
    if tables:
        return tables
    for index, table in enumerate(document.find_all("table")):
        parsed = _parse_table(index, table)
        if len(parsed["headers"]) >= min_headers and len(parsed["rows"]) >= min_rows:
            tables.append(parsed)
    return tables


class TablePageCrawler:
    """Crawls a fixed set of pages and stores the tables found on each.

    Pages are rendered first, since table-heavy sites often sit behind a
    challenge wall, with a direct fetch as the fallback. The historical phase
    keeps every row; the incremental phase keeps the last ``recent_rows``.
    """

    def __init__(
        self,
        name: str,
        urls: Sequence[str],
        selector: Optional[str] = None,
        prefer: FetchMode = FetchMode.RENDERED,
        recent_rows: int = 5,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        readiness: Optional[ReadinessCheck] = None,
    ) -> None:
        self.name = name
        self.urls = list(urls)
        self.selector = selector
        self.prefer = prefer
        self.recent_rows = recent_rows
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.readiness = readiness or ReadinessCheck(
            predicate=all_of(challenge_cleared(), table_present()),
            max_wait=15.0,
            interval=1.0,
            initial_delay=2.0,
        )

    async def crawl_historical(self, ctx: CrawlLifecycle) -> List[Dict[str, Any]]:
        return await self._crawl(ctx, recent_only=False)

    async def crawl_incremental(self, ctx: CrawlLifecycle) -> List[Dict[str, Any]]:
        return await self._crawl(ctx, recent_only=True)

    async def _crawl(self, ctx: CrawlLifecycle, recent_only: bool) -> List[Dict[str, Any]]:
        async def _one(url: str) -> List[Dict[str, Any]]:
            result = await ctx.fetch_with_fallback(
                url,
                render_options=RenderOptions(readiness=self.readiness),
                prefer=self.prefer,
            )
            return self._records(result, recent_only, ctx)

        return await ctx.process_batch(self.urls, _one, self.batch_size, self.batch_delay)

    def _records(self, result: FetchResult, recent_only: bool, ctx: CrawlLifecycle) -> List[Dict[str, Any]]:
        if not result.success:
            ctx.logger.error("page fetch failed", url=result.url, error_type=result.error_type, error=result.error)
            return []
        tables = extract_tables(result.document, self.selector)
        if not tables:
            ctx.logger.warning("no tables found", url=result.url, ready=result.ready)
            return []
        title_tag = result.document.find("title")
        title = title_tag.get_text(strip=True) if title_tag else ""
        records = []
        for table in tables:
            rows = table["rows"][-self.recent_rows:] if recent_only and self.recent_rows > 0 else table["rows"]
            records.append(
                {
                    "url": result.url,
                    "title": title,
                    "table_index": table["index"],
                    "headers": table["headers"],
                    "rows": rows,
                }
            )
        ctx.logger.info("tables extracted", url=result.url, table_count=len(records), mode=result.mode.value)
        return records
