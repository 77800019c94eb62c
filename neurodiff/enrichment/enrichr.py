"""
Enrichr REST client
"""

import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..exceptions import EnrichmentServiceError
from ..utils import get_logger
from .models import EnrichmentBackend, TermHit

logger = get_logger(__name__)

DEFAULT_ENRICHR_URL = "https://maayanlab.cloud/Enrichr"

# Positions in an Enrichr result row
TERM_INDEX = 1
PVALUE_INDEX = 2
GENES_INDEX = 5
ADJUSTED_PVALUE_INDEX = 6


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 0.5,
    status_forcelist: tuple = (429, 500, 502, 503, 504),
    user_agent: str = "neurodiff",
) -> requests.Session:
    """Session with transport-level retries on transient HTTP statuses"""
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=("GET", "POST"),
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


def parse_enrich_rows(rows: Any, database: str) -> List[TermHit]:
    """Convert Enrichr result rows into TermHits, rejecting malformed payloads"""
    if not isinstance(rows, list):
        raise EnrichmentServiceError("malformed enrich response", database=database)

    hits = []
    for row in rows:
        try:
            genes = tuple(str(gene) for gene in row[GENES_INDEX])
            adjusted = float(row[ADJUSTED_PVALUE_INDEX])
            pvalue = float(row[PVALUE_INDEX])
            term = str(row[TERM_INDEX])
        except (IndexError, TypeError, ValueError) as e:
            raise EnrichmentServiceError(f"malformed result row: {e}", database=database)

        if not 0.0 <= adjusted <= 1.0:
            raise EnrichmentServiceError(
                f"adjusted p-value {adjusted} out of range for '{term}'", database=database
            )

        hits.append(
            TermHit(
                term=term,
                adjusted_p_value=adjusted,
                overlap_count=len(genes),
                overlap_genes=genes,
                p_value=pvalue,
            )
        )
    return hits


class EnrichrClient(EnrichmentBackend):
    """
    Query the Enrichr service

    A gene list is uploaded once (``addList``) and then tested against each
    library (``enrich``). Requests are spaced by at least
    ``min_request_interval`` seconds across all threads sharing the client.
    """

    name = "enrichr"

    def __init__(
        self,
        base_url: str = DEFAULT_ENRICHR_URL,
        timeout: float = 30,
        min_request_interval: float = 0.5,
        session: Optional[requests.Session] = None,
        description: str = "neurodiff",
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.min_request_interval = min_request_interval
        self.session = session or create_session()
        self.description = description

        self._lock = threading.Lock()
        self._last_request = 0.0
        self._list_ids: Dict[Tuple[str, ...], int] = {}
        self._list_locks: Dict[Tuple[str, ...], threading.Lock] = {}

    def query(
        self, gene_symbols: Sequence[str], database_names: Sequence[str]
    ) -> Dict[str, List[TermHit]]:
        user_list_id = self.add_list(gene_symbols)
        return {name: self.enrich(user_list_id, name) for name in database_names}

    def add_list(self, gene_symbols: Sequence[str]) -> int:
        """Upload a gene list and return its ``userListId`` (uploaded once per list)"""
        key = tuple(gene_symbols)
        with self._lock:
            key_lock = self._list_locks.setdefault(key, threading.Lock())

        with key_lock:
            if key in self._list_ids:
                return self._list_ids[key]

            payload = {
                "list": (None, "\n".join(key)),
                "description": (None, self.description),
            }
            data = self._request("POST", "addList", files=payload)

            if not isinstance(data, dict) or "userListId" not in data:
                raise EnrichmentServiceError("addList response lacks userListId")

            try:
                user_list_id = int(data["userListId"])
            except (TypeError, ValueError):
                raise EnrichmentServiceError(
                    f"addList returned an invalid userListId: {data['userListId']!r}"
                )
            self._list_ids[key] = user_list_id

        logger.debug(f"Uploaded {len(key)} genes to Enrichr (userListId={user_list_id})")
        return user_list_id

    def enrich(self, user_list_id: int, database: str) -> List[TermHit]:
        data = self._request(
            "GET",
            "enrich",
            params={"userListId": user_list_id, "backgroundType": database},
            database=database,
        )
        if not isinstance(data, dict) or database not in data:
            raise EnrichmentServiceError("library missing from enrich response", database=database)
        return parse_enrich_rows(data[database], database)

    def _wait_for_slot(self) -> None:
        with self._lock:
            wait = self._last_request + self.min_request_interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request = time.monotonic()

    def _request(self, method: str, endpoint: str, database: Optional[str] = None, **kwargs) -> Any:
        self._wait_for_slot()
        url = f"{self.base_url}/{endpoint}"

        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if response.status_code != 200:
            raise EnrichmentServiceError(
                f"{method} {endpoint} returned HTTP {response.status_code}", database=database
            )

        try:
            return response.json()
        except ValueError as e:
            raise EnrichmentServiceError(f"invalid JSON from {endpoint}: {e}", database=database)
