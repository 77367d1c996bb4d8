"""
FAA Certification RAG - Semantic Chunking Module
Splits long regulatory documents into retrieval-sized passages, preferring
LLM-identified section boundaries with a deterministic fixed-length fallback.
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from loguru import logger

from certrag.rag.llm import LLMService


@dataclass
class DocumentChunk:
    """A contiguous slice of a document; offsets index into the source text."""
    content: str
    index: int
    start_char: int
    end_char: int
    title: Optional[str] = None


@dataclass
class ChunkingResult:
    chunks: List[DocumentChunk]
    method: str  # "single", "llm" or "fallback"

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


BOUNDARY_SYSTEM_PROMPT = """You are a document structure analyzer for FAA regulatory documents (ACs, ADs, TSOs, CFR sections).

Your task: Identify logical section boundaries for chunking. Each chunk should be ~{target_size} characters.

For FAA documents, good boundaries are:
- Chapter/section headings (e.g., "CHAPTER 1", "Section 3")
- Numbered paragraphs (e.g., "1.", "2.a.", "3.1")
- CFR section references (e.g., "§ 23.2150", "14 CFR 25.1181")
- Major topic transitions
- Tables of contents entries
- Appendix boundaries

Return ONLY a JSON array of boundary objects. Each boundary marks where a NEW chunk should START.
Format: [{{"pos": <character_position>, "title": "<brief_section_title>"}}]

Rules:
- First boundary is always {{"pos": 0, "title": "..."}}
- Aim for {target_chunks} chunks (document is {length} chars)
- Maximum {max_chunks} boundaries
- Positions must be valid character indices in the document
- Try to break at paragraph boundaries (after \\n\\n) near target positions"""


BOUNDARY_USER_TEMPLATE = """Analyze this FAA document and return chunk boundaries as JSON:

Document: "{title}"
Length: {length} characters

---
{text}
---

Return JSON array of boundaries:"""

_JSON_ARRAY = re.compile(r'\[[\s\S]*\]')


def parse_boundaries(reply: str) -> Optional[List[dict]]:
    """Extract [{pos, title}] from an LLM reply; None when no usable array is present."""
    match = _JSON_ARRAY.search(reply or "")
    if not match:
        return None
    try:
        raw = json.loads(match.group(0))
    except ValueError:
        return None
    if not isinstance(raw, list):
        return None

    boundaries = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            pos = int(item.get("pos"))
        except (TypeError, ValueError):
            continue
        title = item.get("title")
        boundaries.append({"pos": pos, "title": str(title) if title else None})
    return boundaries


def boundaries_to_chunks(
    text: str,
    boundaries: List[dict],
    min_size: int,
    max_chunks: int,
) -> List[DocumentChunk]:
    """Pair each boundary with the next; short chunks are dropped unless they are last."""
    chunks: List[DocumentChunk] = []
    count = len(boundaries)

    for i, boundary in enumerate(boundaries[:max_chunks]):
        start = max(0, min(boundary["pos"], len(text) - 1))
        end = min(boundaries[i + 1]["pos"], len(text)) if i < count - 1 else len(text)

        content = text[start:end].strip()
        if len(content) < min_size and i < count - 1:
            continue

        chunks.append(DocumentChunk(
            content=content,
            index=len(chunks),
            start_char=start,
            end_char=end,
            title=boundary.get("title"),
        ))

    return chunks


def fallback_chunks(text: str, target_size: int, min_size: int, max_chunks: int) -> List[DocumentChunk]:
    """
    Fixed-length windows with a 10% overlap.

    Each window prefers to end after a paragraph break, else after a
    sentence. Chunk content is the exact source slice, so the chunks cover
    the whole text: a tail shorter than min_size is folded into the
    preceding chunk, and the last allowed chunk runs to the end.
    """
    length = len(text)
    if length == 0:
        return []

    overlap = int(target_size * 0.1)
    chunks: List[DocumentChunk] = []
    start = 0

    while True:
        if len(chunks) == max_chunks - 1 or length - start <= target_size:
            end = length
        else:
            end = start + target_size
            last_paragraph = text.rfind("\n\n", 0, end + 2)
            if last_paragraph > start + min_size:
                end = last_paragraph + 2
            else:
                last_sentence = text.rfind(". ", 0, end + 2)
                if last_sentence > start + min_size:
                    end = last_sentence + 2
            if length - end < min_size:
                end = length

        chunks.append(DocumentChunk(
            content=text[start:end],
            index=len(chunks),
            start_char=start,
            end_char=end,
        ))

        if end >= length:
            return chunks
        start = max(end - overlap, start + 1)


class SemanticChunker:
    """
    Chunk documents for indexing.

    The LLM path is best-effort and not deterministic across calls; any
    failure falls back to fixed-length chunking.
    """

    def __init__(
        self,
        llm: Optional[LLMService] = None,
        model: Optional[str] = None,
        target_size: int = 2000,
        min_size: int = 500,
        max_chunks: int = 50,
        analysis_limit: int = 100000,
    ):
        self.llm = llm
        self.model = model
        self.target_size = target_size
        self.min_size = min_size
        self.max_chunks = max_chunks
        self.analysis_limit = analysis_limit

        logger.info(
            f"SemanticChunker initialized: target={target_size}, min={min_size}, max_chunks={max_chunks}"
        )

    def needs_chunking(self, text_length: int) -> bool:
        return text_length > self.target_size

    def chunk_fallback(self, text: str) -> ChunkingResult:
        chunks = fallback_chunks(text, self.target_size, self.min_size, self.max_chunks)
        logger.info(f"Fallback chunked document into {len(chunks)} fixed-length chunks")
        return ChunkingResult(chunks=chunks, method="fallback")

    async def chunk(self, text: str, title: str) -> ChunkingResult:
        if not self.needs_chunking(len(text)):
            return ChunkingResult(
                chunks=[DocumentChunk(content=text.strip(), index=0, start_char=0, end_char=len(text))],
                method="single",
            )

        if self.llm is None or not self.llm.is_available:
            return self.chunk_fallback(text)

        try:
            reply = await self._request_boundaries(text, title)
        except Exception as e:
            logger.error(f"LLM chunking failed, using fallback: {e}")
            return self.chunk_fallback(text)

        boundaries = parse_boundaries(reply)
        if not boundaries:
            logger.warning("Could not parse chunk boundaries from LLM, using fallback")
            return self.chunk_fallback(text)

        chunks = boundaries_to_chunks(text, boundaries, self.min_size, self.max_chunks)
        if not chunks:
            return self.chunk_fallback(text)

        logger.info(f"LLM chunked \"{title}\" into {len(chunks)} semantic chunks")
        return ChunkingResult(chunks=chunks, method="llm")

    async def _request_boundaries(self, text: str, title: str) -> str:
        if len(text) > self.analysis_limit:
            analysis_text = text[:self.analysis_limit] + "\n\n[... document continues ...]"
        else:
            analysis_text = text

        system = BOUNDARY_SYSTEM_PROMPT.format(
            target_size=self.target_size,
            target_chunks=min(math.ceil(len(text) / self.target_size), self.max_chunks),
            length=len(text),
            max_chunks=self.max_chunks,
        )
        user = BOUNDARY_USER_TEMPLATE.format(title=title, length=len(text), text=analysis_text)
        return await self.llm.complete(system, [{"role": "user", "content": user}], max_tokens=4096, model=self.model)
