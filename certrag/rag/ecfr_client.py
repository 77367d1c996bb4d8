"""
FAA Certification RAG - eCFR Client
Fetches authoritative regulation text from the Electronic Code of Federal
Regulations API (https://www.ecfr.gov/api).

Every operation degrades to "no data" instead of raising, so the orchestrator
can answer from partial context when a section is missing or the API is down.
"""

import asyncio
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger


@dataclass(frozen=True)
class RegulationSection:
    """One CFR section, e.g. 14 CFR § 23.2150."""
    title: int
    part: int
    section: str
    heading: str
    content: str
    effective_date: str
    url: str

    @property
    def citation(self) -> str:
        return f"{self.part}.{self.section}"

    @property
    def display_title(self) -> str:
        return f"{self.title} CFR § {self.citation} - {self.heading}"


@dataclass
class RegulationSearchResult:
    """A hit from the eCFR full-text search endpoint."""
    title: int
    part: int
    section: str
    section_title: str
    snippet: str
    score: float


class ECFRClient:
    """Client for the eCFR versioner and search APIs."""

    XML_DECLARATION = re.compile(r'<\?xml[^>]*\?>')
    HEAD_TAG = re.compile(r'<HEAD>([^<]*)</HEAD>')
    ANY_TAG = re.compile(r'<[^>]+>')
    EXTRA_NEWLINES = re.compile(r'\n{3,}')

    def __init__(self, base_url: str = "https://www.ecfr.gov/api", http_client: httpx.AsyncClient = None):
        self.base_url = base_url.rstrip("/")
        self._client = http_client
        self._latest_dates: Dict[int, str] = {}

        logger.info(f"ECFRClient initialized: {self.base_url}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Helpers
    # =========================================================================

    async def get_latest_date(self, title: int) -> str:
        """Latest 'up to date as of' date for a title, memoized per process."""
        cached = self._latest_dates.get(title)
        if cached:
            return cached

        try:
            response = await self._get_client().get(f"{self.base_url}/versioner/v1/titles.json")
            if response.status_code == 200:
                for info in response.json().get("titles", []):
                    if info.get("number") == title and info.get("up_to_date_as_of"):
                        self._latest_dates[title] = info["up_to_date_as_of"]
                        return info["up_to_date_as_of"]
        except Exception as e:
            logger.warning(f"Could not fetch eCFR titles, using fallback date: {e}")

        return date.today().replace(day=1).isoformat()

    @classmethod
    def extract_text(cls, xml: str) -> str:
        """Turn eCFR section XML into plain text with paragraph breaks."""
        text = cls.XML_DECLARATION.sub("", xml)
        text = cls.HEAD_TAG.sub(r"\1\n\n", text)
        text = text.replace("<P>", "").replace("</P>", "\n\n")
        text = cls.ANY_TAG.sub("", text)
        text = cls.EXTRA_NEWLINES.sub("\n\n", text)
        return text.strip()

    @classmethod
    def extract_heading(cls, xml: str) -> Optional[str]:
        match = cls.HEAD_TAG.search(xml)
        return match.group(1).strip() if match else None

    @staticmethod
    def section_url(title: int, part: int, section: str) -> str:
        return f"https://www.ecfr.gov/current/title-{title}/part-{part}/section-{part}.{section}"

    @staticmethod
    def parse_section_id(section_id: str) -> Optional[tuple]:
        """Split "23.2150" into (23, "2150"); None when malformed."""
        part_str, _, section = str(section_id).strip().partition(".")
        if not part_str.isdigit() or not section:
            return None
        return int(part_str), section

    # =========================================================================
    # Operations
    # =========================================================================

    async def fetch_section(self, title: int, part: int, section: str) -> Optional[RegulationSection]:
        """
        Fetch one section's text.

        Returns None on 404, on error payloads, on empty content and on any
        transport failure.
        """
        full_section = f"{part}.{section}"
        logger.info(f"Fetching eCFR: Title {title}, § {full_section}")

        try:
            effective_date = await self.get_latest_date(title)
            response = await self._get_client().get(
                f"{self.base_url}/versioner/v1/full/{effective_date}/title-{title}.xml",
                params={"part": str(part), "section": full_section},
                headers={"Accept": "application/xml"},
            )

            if response.status_code == 404:
                logger.info(f"eCFR section not found: § {full_section}")
                return None
            if response.status_code != 200:
                logger.error(f"eCFR API error: {response.status_code} - {response.text[:200]}")
                return None

            xml = response.text
            if "<error>" in xml or '"error"' in xml:
                logger.info(f"eCFR returned error for § {full_section}")
                return None

            content = self.extract_text(xml)
            if not content:
                logger.info(f"No content found for § {full_section}")
                return None

            logger.info(f"eCFR fetched: § {full_section} ({len(content)} chars)")
            return RegulationSection(
                title=title,
                part=part,
                section=section,
                heading=self.extract_heading(xml) or f"§ {full_section}",
                content=content,
                effective_date=effective_date,
                url=self.section_url(title, part, section),
            )
        except Exception as e:
            logger.error(f"eCFR fetch error for § {full_section}: {e}")
            return None

    async def fetch_sections(self, title: int, sections: List[str]) -> List[RegulationSection]:
        """Fetch "part.section" identifiers concurrently; bad ids and misses are dropped."""
        logger.info(f"Fetching {len(sections)} eCFR sections...")

        requests = []
        for section_id in sections:
            parsed = self.parse_section_id(section_id)
            if parsed is None:
                logger.warning(f"Invalid section format: {section_id}")
                continue
            requests.append(self.fetch_section(title, *parsed))

        results = await asyncio.gather(*requests)
        found = [r for r in results if r is not None]

        logger.info(f"Retrieved {len(found)}/{len(sections)} eCFR sections")
        return found

    async def get_part_structure(self, title: int, part: int) -> Optional[Dict[str, Any]]:
        """Table-of-contents tree for a part, or None."""
        logger.info(f"Fetching eCFR structure for Title {title}, Part {part}")
        try:
            effective_date = await self.get_latest_date(title)
            response = await self._get_client().get(
                f"{self.base_url}/versioner/v1/structure/{effective_date}/title-{title}.json",
                params={"part": str(part)},
                headers={"Accept": "application/json"},
            )
            if response.status_code != 200:
                logger.warning(f"Could not fetch structure for Part {part}")
                return None
            return response.json()
        except Exception as e:
            logger.error(f"eCFR structure error: {e}")
            return None

    async def search_sections(
        self,
        query: str,
        title: Optional[int] = None,
        part: Optional[int] = None,
    ) -> List[RegulationSearchResult]:
        """Full-text search; returns [] on any failure."""
        logger.info(f"Searching eCFR for: \"{query}\"")

        params = {"query": query, "per_page": "10"}
        if title:
            params["title"] = str(title)
        if part:
            params["part"] = str(part)

        try:
            response = await self._get_client().get(
                f"{self.base_url}/search/v1/results",
                params=params,
                headers={"Accept": "application/json"},
            )
            if response.status_code != 200:
                raise httpx.HTTPStatusError(
                    f"eCFR search error: {response.status_code}",
                    request=response.request,
                    response=response,
                )

            results = [self._parse_search_hit(hit) for hit in response.json().get("results", [])]
            results = [r for r in results if r is not None]
            logger.info(f"eCFR search found {len(results)} results")
            return results
        except Exception as e:
            logger.error(f"eCFR search error: {e}")
            return []

    def _parse_search_hit(self, hit: Dict[str, Any]) -> Optional[RegulationSearchResult]:
        hierarchy = hit.get("hierarchy") or {}
        headings = hit.get("headings") or {}

        raw_section = str(hit.get("section") or hierarchy.get("section") or "")
        # Hierarchy sections are "part.section"; keep only the section suffix
        if "." in raw_section:
            raw_section = raw_section.split(".", 1)[1]

        try:
            hit_title = int(hit.get("title") or hierarchy.get("title") or 0)
            hit_part = int(hit.get("part") or hierarchy.get("part") or 0)
        except (TypeError, ValueError):
            return None

        return RegulationSearchResult(
            title=hit_title,
            part=hit_part,
            section=raw_section,
            section_title=hit.get("section_title") or headings.get("section") or "",
            snippet=hit.get("full_text_excerpt") or hit.get("snippet") or "",
            score=float(hit.get("score") or 0),
        )
