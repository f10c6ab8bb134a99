"""Forwarding to the configured upstream nameservers.

Brief:
  Two modes share one ordered nameserver list:
    - RecursiveResolver.resolve(): batch mode used by the zone engine; sends
      every still-pending question to each nameserver in turn and collects
      whatever answers come back.
    - RecursiveResolver.forward(): pass-through mode; relays the client's
      query verbatim and returns the first usable upstream reply untouched.

  Nameservers are always tried sequentially in configured order. Each
  exchange is bounded by that nameserver's own timeout; there is no overall
  per-query deadline.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Iterable, List, Optional, Sequence, Tuple

from dnslib import QTYPE, RR, DNSHeader, DNSQuestion, DNSRecord
from dnslib.dns import DNSError

from ..config.config_parser import Nameserver
from .transports.tcp import TCPError, tcp_query
from .transports.udp import UDPError, udp_query

logger = logging.getLogger("lodestar.recursion")

# Failures that mean "try the next nameserver".
UPSTREAM_ERRORS = (UDPError, TCPError, DNSError, ValueError)


class UpstreamMismatch(ValueError):
    """Upstream reply does not belong to the query that was sent."""


def exchange(query: bytes, nameserver: Nameserver) -> bytes:
    """Brief: Perform one exchange with a nameserver over its transport.

    Inputs:
      - query: Wire-format DNS query.
      - nameserver: Target Nameserver (transport + timeout).

    Outputs:
      - bytes: Raw upstream response.

    Raises:
      - UDPError / TCPError on network failure or timeout.
    """

    timeout_ms = max(1, int(round(nameserver.timeout * 1000)))
    if nameserver.transport == "udp":
        return udp_query(nameserver.host, nameserver.port, query, timeout_ms=timeout_ms)
    return tcp_query(nameserver.host, nameserver.port, query, timeout_ms=timeout_ms)


def _name_key(name) -> str:
    return str(name).lower()


def _parse_reply(wire: bytes, query_id: int, nameserver: Nameserver) -> DNSRecord:
    reply = DNSRecord.parse(wire)
    if reply.header.id != query_id:
        raise UpstreamMismatch(
            f"reply ID {reply.header.id} from {nameserver.address} does not match query ID {query_id}"
        )
    if reply.header.tc:
        logger.debug(
            "Truncated reply from %s; using partial answer", nameserver.address
        )
    return reply


class RecursiveResolver:
    """Sequential upstream fallback over an ordered nameserver list.

    Inputs (constructor):
      - nameservers: Ordered Nameservers (first entry tried first).

    Outputs:
      - RecursiveResolver instance.

    Example:
      >>> from lodestar.config.config_parser import Nameserver
      >>> resolver = RecursiveResolver([Nameserver("1.1.1.1", transport="udp")])
      >>> answers = resolver.resolve(DNSRecord.question("example.org").questions)
    """

    def __init__(self, nameservers: Sequence[Nameserver]) -> None:
        self.nameservers: Tuple[Nameserver, ...] = tuple(nameservers)

    def resolve(self, questions: Iterable[DNSQuestion]) -> List[RR]:
        """Brief: Resolve questions against each nameserver until none remain.

        Inputs:
          - questions: Unresolved questions.

        Outputs:
          - list[RR]: Every answer collected, in the order received. Questions
            no nameserver answered are simply absent.

        Notes:
          - Each attempt carries all currently pending questions in one
            message (fresh ID, RD=1).
          - A question leaves the pending list when any returned answer's
            owner name matches it. Answers for names no longer pending are
            still kept.
          - A truncated reply counts as a (partial) success.
        """

        pending: List[DNSQuestion] = list(questions)

        answers: List[RR] = []
        for nameserver in self.nameservers:
            if not pending:
                break

            query = DNSRecord(
                DNSHeader(id=random.randint(0, 0xFFFF), rd=1),
                questions=list(pending),
            )
            try:
                reply = _parse_reply(
                    exchange(query.pack(), nameserver), query.header.id, nameserver
                )
            except UPSTREAM_ERRORS as e:
                logger.warning("DNS resolve via %s failed: %s", nameserver.address, e)
                continue

            answers.extend(reply.rr)
            answered = {_name_key(rr.rname) for rr in reply.rr}
            pending = [q for q in pending if _name_key(q.qname) not in answered]

        if pending:
            logger.debug(
                "Unresolved after recursion: %s",
                [f"{q.qname} {QTYPE.get(q.qtype)}" for q in pending],
            )
        return answers

    def forward(self, request: bytes) -> Tuple[Optional[bytes], Optional[Nameserver]]:
        """Brief: Relay a whole query; return the first usable reply verbatim.

        Inputs:
          - request: Client query bytes, forwarded unchanged.

        Outputs:
          - (reply_bytes, nameserver) on success, or (None, None) when every
            nameserver failed or none are configured.
        """

        try:
            query_id = DNSRecord.parse(request).header.id
        except DNSError:
            query_id = int.from_bytes(request[:2], "big") if len(request) >= 2 else 0

        for nameserver in self.nameservers:
            started = time.monotonic()
            try:
                wire = exchange(request, nameserver)
                _parse_reply(wire, query_id, nameserver)
            except UPSTREAM_ERRORS as e:
                logger.warning("Recurse via %s failed: %s", nameserver.address, e)
                continue
            logger.info(
                "Recurse RTT via %s: %.1fms",
                nameserver.address,
                (time.monotonic() - started) * 1000.0,
            )
            return wire, nameserver
        return None, None
