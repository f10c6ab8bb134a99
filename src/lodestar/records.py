"""Owned-zone records and the concurrency-safe store that holds them.

Brief:
  Record/NamedRecord are the payload types shared by the DNS engine and the
  admin HTTP API. RecordStore is the single mutable table every query reads
  and the admin API writes.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Dict, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger("lodestar.records")


class Record(BaseModel):
    """Brief: Address payload for one owned name.

    Inputs:
      - address: IPv4 literal (also accepted as ``Address``).
      - ttl: Non-negative TTL in seconds (also accepted as ``TTL``).

    Outputs:
      - Immutable Record instance; updates replace it wholesale.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    address: str = Field(validation_alias=AliasChoices("address", "Address"))
    ttl: int = Field(default=0, ge=0, validation_alias=AliasChoices("ttl", "TTL"))

    @field_validator("address")
    @classmethod
    def _check_ipv4(cls, value: str) -> str:
        try:
            return str(ipaddress.IPv4Address(str(value).strip()))
        except ipaddress.AddressValueError as exc:
            raise ValueError(f"address must be an IPv4 literal: {exc}") from exc


class NamedRecord(Record):
    """Brief: Record plus its zone-relative name (admin create payload).

    Inputs:
      - name: Zone-relative hostname (also accepted as ``Name``).
      - address, ttl: As for Record.

    Outputs:
      - NamedRecord instance; ``record()`` returns the bare Record.
    """

    name: str = Field(min_length=1, validation_alias=AliasChoices("name", "Name"))

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        name = str(value).strip()
        if not name:
            raise ValueError("name must not be empty")
        return name

    def record(self) -> Record:
        return Record(address=self.address, ttl=self.ttl)


class RecordStore:
    """Thread-safe mapping of zone-relative hostname -> Record.

    Inputs (constructor):
      - records: Optional initial mapping (copied).

    Outputs:
      - RecordStore exposing get/set/delete/snapshot.

    All operations hold a single lock; readers never see a half-applied
    write because Records are immutable and swapped in as whole objects.

    Example:
      >>> store = RecordStore({"www": Record(address="10.0.0.1", ttl=300)})
      >>> store.get("www").ttl
      300
    """

    def __init__(self, records: Optional[Mapping[str, Record]] = None) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Record] = dict(records or {})

    def get(self, name: str) -> Optional[Record]:
        with self._lock:
            return self._records.get(name)

    def set(self, name: str, record: Record) -> None:
        if not isinstance(record, Record):
            raise TypeError("record must be a Record instance")
        with self._lock:
            self._records[name] = record

    def delete(self, name: str) -> None:
        with self._lock:
            self._records.pop(name, None)

    def snapshot(self) -> Dict[str, Record]:
        """Return a point-in-time copy of the table (not a live view)."""
        with self._lock:
            return dict(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._records
