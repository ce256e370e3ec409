"""Per-request query state."""

import time
from collections.abc import Callable, Iterable

from pydicom import Dataset

from arcquery.exceptions import ConfigurationError
from arcquery.query.models import Aggregate
from arcquery.query.params import IDWithIssuer, QueryParameters


class QueryContext:
    """Mutable state of one find request.

    Holds the requested keys, the query parameters, the patient identity
    filters and the early-stop test checked at every row boundary. Owned by
    exactly one request.
    """

    def __init__(
        self,
        keys: Dataset | None,
        params: QueryParameters | None,
        patient_ids: Iterable[IDWithIssuer] | None = None,
        deadline: float | None = None,
        stop_requested: Callable[[], bool] | None = None,
    ):
        """Initialize the context.

        Args:
            keys: Requested keys; the match template of the request
            params: Query parameters of the request
            patient_ids: Identity filters; derived from PatientID and
                IssuerOfPatientID of ``keys`` if not given
            deadline: ``time.monotonic()`` value after which no row is read
            stop_requested: Host callback asked before every row

        Raises:
            ConfigurationError: If no query parameters are supplied
        """
        if params is None:
            raise ConfigurationError("Query parameters are required")
        self.keys = keys if keys is not None else Dataset()
        self.params = params
        self.patient_ids: list[IDWithIssuer] = (
            list(patient_ids) if patient_ids is not None else self._patient_ids_from_keys()
        )
        self.deadline = deadline
        self._stop_requested = stop_requested
        self._cancelled = False

        self.matched = 0
        self.skipped = 0
        self.failed = 0
        self.pending_writes: list[Aggregate] = []

    def _patient_ids_from_keys(self) -> list[IDWithIssuer]:
        pid = str(self.keys.get("PatientID", "") or "")
        if not pid:
            return []
        issuer = str(self.keys.get("IssuerOfPatientID", "") or "") or None
        return [IDWithIssuer(id=pid, issuer=issuer)]

    def add_patient_ids(self, pids: Iterable[IDWithIssuer]) -> None:
        """Add identifiers of the same patient known under other issuers."""
        for pid in pids:
            if pid not in self.patient_ids:
                self.patient_ids.append(pid)

    def cancel(self) -> None:
        """Abandon the request at the next row boundary."""
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def should_stop(self) -> bool:
        """Early-stop test checked before reading each row."""
        if self._cancelled:
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._cancelled = True
            return True
        if self._stop_requested is not None and self._stop_requested():
            self._cancelled = True
            return True
        return False

    def defer_write(self, aggregate: Aggregate) -> None:
        """Queue a recomputed aggregate to be stored once the cursor is released."""
        self.pending_writes.append(aggregate)
