"""
FAA Certification RAG - Search Quality Evaluator
Decides whether hybrid-search results can answer a question on their own or
whether live regulation/repository retrieval is needed.
"""

import re
from dataclasses import dataclass
from typing import List, Optional


# Minimum top score for results to count as relevant
RELEVANCE_THRESHOLD = 0.7

# Citation formats a user may name explicitly
DOC_PATTERNS = {
    "AC": re.compile(r'\bAC\s+([\d/.-]+[A-Z]?)', re.IGNORECASE),               # AC 43.13-1B
    "AD": re.compile(r'\bAD\s+([\d-]+)', re.IGNORECASE),                       # AD 2023-01-05
    "CFR": re.compile(r'\b(14\s+)?CFR\s+(Part\s+)?(\d+(\.\d+)?)', re.IGNORECASE),  # 14 CFR Part 25
    "FAR": re.compile(r'\bFAR\s+(Part\s+)?(\d+(\.\d+)?)', re.IGNORECASE),      # FAR Part 23
    "TSO": re.compile(r'\bTSO[-\s]?([A-Z]?\d+[A-Za-z]?)', re.IGNORECASE),      # TSO-C129a
    "STC": re.compile(r'\bSTC\s*#?\s*([A-Z]{2}\d+[A-Z]{2})', re.IGNORECASE),   # STC SA00001SE
    "Order": re.compile(r'\bOrder\s+(\d+\.\d+[A-Z]?)', re.IGNORECASE),         # Order 8900.1
}


@dataclass
class RetrievedDocument:
    """A passage of context: hybrid-search hit, regulation section or repository document."""
    title: str
    chunk: str = ""
    score: Optional[float] = None
    document_id: Optional[str] = None
    source: str = ""


@dataclass
class SearchQuality:
    """Evaluation outcome for one result set."""
    is_sufficient: bool
    reason: str
    score: float
    specific_doc_mentioned: Optional[str] = None


def extract_specific_document(query: str) -> Optional[str]:
    """Full citation text of the first document reference in the query, e.g. "AC 23-8C"."""
    for pattern in DOC_PATTERNS.values():
        match = pattern.search(query)
        if match:
            return match.group(0).strip()
    return None


def evaluate_search_results(results: List[RetrievedDocument], query: str) -> SearchQuality:
    """
    Score a result set.

    Checks run in order: no results, top score below threshold, then a
    document named in the query that no result mentions. A wrong-document
    result set is insufficient no matter how well it scored.
    """
    if not results:
        return SearchQuality(is_sufficient=False, reason="No search results found", score=0.0)

    top_score = results[0].score or 0.0
    if top_score < RELEVANCE_THRESHOLD:
        return SearchQuality(
            is_sufficient=False,
            reason=f"Low relevance scores (top: {top_score:.2f})",
            score=top_score,
        )

    specific_doc = extract_specific_document(query)
    if specific_doc:
        needle = specific_doc.lower()
        found = any(
            needle in (r.title or "").lower() or needle in (r.chunk or "").lower()
            for r in results
        )
        if not found:
            return SearchQuality(
                is_sufficient=False,
                reason=f"Specific document \"{specific_doc}\" not found in index",
                score=top_score * 0.5,
                specific_doc_mentioned=specific_doc,
            )

    return SearchQuality(is_sufficient=True, reason="Good search results", score=top_score)


def extract_document_type(query: str) -> Optional[str]:
    """
    Repository document type to search for a query.

    The repository holds AC, AD, TSO and Order documents only; generic CFR
    and STC questions return None.
    """
    if re.search(r'\bAC\s+[\d/.-]', query, re.I) or re.search(r'\bADVISORY\s+CIRCULAR', query, re.I):
        return "AC"
    if re.search(r'\bAD\s+[\d-]', query, re.I) or re.search(r'\bAIRWORTHINESS\s+DIRECTIVE', query, re.I):
        return "AD"
    if re.search(r'\bTSO[-\s]?[A-Z]?\d', query, re.I):
        return "TSO"
    if re.search(r'\bORDER\s+\d', query, re.I):
        return "Order"

    if (re.search(r'\bCFR\b', query, re.I)
            or re.search(r'\bCODE\s+OF\s+FEDERAL', query, re.I)
            or re.search(r'\bFAR\s+(Part\s+)?\d', query, re.I)):
        # Part-specific questions are served by the ACs written against that part
        return "AC" if re.search(r'Part\s*(\d+)', query, re.I) else None

    if re.search(r'\bSTC\b', query, re.I):
        return None

    if re.search(r'\b(maintenance|repair|inspection|overhaul)\b', query, re.I):
        return "AC"
    if re.search(r'\b(airworthiness|unsafe|mandatory)\b', query, re.I):
        return "AD"

    return "AC"
