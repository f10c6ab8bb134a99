"""Zone resolution engine and reply helpers shared by every listener.

Brief:
  ZoneResolver decides, per query, whether answers come from the owned
  RecordStore or from upstream nameservers, and assembles the reply.
  resolve_query_bytes() is the single entry point used by the UDP and TCP
  listeners: bytes in, bytes out.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from dnslib import NS, QTYPE, RCODE, RR, A, DNSHeader, DNSQuestion, DNSRecord
from dnslib.dns import DNSError
from dnslib.label import DNSBuffer

from ..config.config_parser import ZoneConfig
from .recursion import RecursiveResolver

logger = logging.getLogger("lodestar.server")

# TTL of the authority NS record attached to every zone reply.
AUTHORITY_TTL = 3600


class _UncompressedBuffer(DNSBuffer):
    """DNSBuffer that never emits name compression pointers."""

    def encode_name(self, name):
        self.encode_name_nocompress(name)


def pack_uncompressed(record: DNSRecord) -> bytes:
    """Brief: Pack a DNSRecord with message compression disabled.

    Inputs:
      - record: DNSRecord to serialize (header counts are refreshed).

    Outputs:
      - bytes: Wire-format message where every name is written in full.
    """

    record.set_header_qa()
    buffer = _UncompressedBuffer()
    record.header.pack(buffer)
    for q in record.questions:
        q.pack(buffer)
    for rr in record.rr + record.auth + record.ar:
        rr.pack(buffer)
    return bytes(buffer.data)


def _set_response_id(wire: bytes, req_id: int) -> bytes:
    """Brief: Return wire with its first two bytes replaced by req_id.

    Inputs:
      - wire: DNS response bytes.
      - req_id: Request ID to copy into the response.

    Outputs:
      - bytes: Response with the corrected ID (unchanged if too short).
    """

    if len(wire) < 2:
        return bytes(wire)
    return int(req_id & 0xFFFF).to_bytes(2, "big") + bytes(wire[2:])


def _reply_header(request: DNSRecord, **flags) -> DNSHeader:
    return DNSHeader(
        id=request.header.id,
        qr=1,
        opcode=request.header.opcode,
        rd=request.header.rd,
        **flags,
    )


def make_error_response(request: DNSRecord, rcode: int) -> bytes:
    """Brief: Build an uncompressed error reply echoing the request's questions.

    Inputs:
      - request: Parsed client request.
      - rcode: dnslib RCODE value (SERVFAIL, FORMERR, ...).

    Outputs:
      - bytes: Reply with RA=1 and the given rcode.
    """

    reply = DNSRecord(
        _reply_header(request, ra=1, rcode=rcode),
        questions=list(request.questions),
    )
    return pack_uncompressed(reply)


def make_servfail_response(request: DNSRecord) -> bytes:
    """Brief: SERVFAIL reply for a request every upstream failed to answer."""

    return make_error_response(request, RCODE.SERVFAIL)


def _fqdn(host: str) -> str:
    return host if host.endswith(".") else host + "."


class ZoneResolver:
    """Authoritative engine for one owned zone, with upstream fallback.

    Inputs (constructor):
      - config: Shared ZoneConfig (zone name, RecordStore, nameservers).
      - recursive: Optional RecursiveResolver; built from
        config.nameservers when omitted.

    Outputs:
      - ZoneResolver; ``resolve_query_bytes`` is the listener callback.

    Example:
      >>> engine = ZoneResolver(zone_config)
      >>> wire = engine.resolve_query_bytes(query_bytes, "127.0.0.1")
    """

    def __init__(
        self, config: ZoneConfig, recursive: Optional[RecursiveResolver] = None
    ) -> None:
        self.config = config
        self.recursive = recursive or RecursiveResolver(config.nameservers)

    def owns(self, qname) -> bool:
        """Brief: True when qname is the zone apex or falls under it."""

        name = str(qname).lower()
        zone = self.config.name
        if zone == ".":
            return True
        return name == zone or name.endswith("." + zone)

    def record_key(self, qname) -> str:
        """Brief: Strip the zone suffix from qname to get a RecordStore key.

        Example:
          >>> engine.record_key("WWW.example.com.")
          'www'
        """

        name = str(qname).lower()
        suffix = "." + self.config.name
        if name.endswith(suffix):
            return name[: -len(suffix)]
        return name

    def authority(self) -> RR:
        return RR(
            self.config.name,
            QTYPE.NS,
            rdata=NS(_fqdn(self.config.nameserver_host)),
            ttl=AUTHORITY_TTL,
        )

    def split(self, request: DNSRecord) -> Tuple[List[RR], List[DNSQuestion]]:
        """Brief: Answer owned questions locally; return the rest as unresolved.

        Inputs:
          - request: Parsed client request.

        Outputs:
          - (answers, unresolved): synthesized A records (owner = question
            name as asked) and questions with no RecordStore entry.
        """

        answers: List[RR] = []
        unresolved: List[DNSQuestion] = []
        for q in request.questions:
            record = self.config.records.get(self.record_key(q.qname))
            if record is None:
                unresolved.append(q)
                continue
            answers.append(
                RR(q.qname, QTYPE.A, rdata=A(record.address), ttl=record.ttl)
            )
        return answers, unresolved

    def resolve(self, request: DNSRecord) -> DNSRecord:
        """Brief: Build the authoritative reply for a query under the zone.

        Inputs:
          - request: Parsed client request.

        Outputs:
          - DNSRecord: AA=1, RA=1 reply with local plus upstream answers and a
            single authority NS record for the zone.

        Notes:
          - Questions nobody can answer are left out of the answer section;
            the rcode stays NOERROR.
        """

        answers, unresolved = self.split(request)
        if unresolved:
            logger.info(
                "Failed to resolve %s, recursing",
                [str(q.qname) for q in unresolved],
            )
            answers.extend(self.recursive.resolve(unresolved))

        return DNSRecord(
            _reply_header(request, aa=1, ra=1),
            questions=list(request.questions),
            rr=answers,
            auth=[self.authority()],
        )

    def forward(
        self,
        data: bytes,
        request: DNSRecord,
        client_ip: str = "",
        listener: Optional[str] = None,
    ) -> bytes:
        """Brief: Pass-through path for queries outside the zone.

        Outputs:
          - bytes: The first successful upstream reply verbatim (ID matched to
            the request), or a SERVFAIL reply when every nameserver failed.
        """

        wire, _ = self.recursive.forward(data)
        if wire is None:
            logger.warning(
                "All resolvers failed for %s from client %s (%s)",
                [str(q.qname) for q in request.questions],
                client_ip,
                listener or "?",
            )
            return make_servfail_response(request)
        return _set_response_id(wire, request.header.id)

    def resolve_query_bytes(
        self, data: bytes, client_ip: str, *, listener: Optional[str] = None
    ) -> bytes:
        """Resolve a single DNS wire query and return the wire response.

        Inputs:
          - data: Wire-format DNS query bytes.
          - client_ip: Client address, for logging.
          - listener: Optional inbound transport name ("udp" or "tcp").
        Outputs:
          - bytes: Wire-format response, or b"" when the request could not be
            decoded and should be dropped.

        Routing uses the first question: names under the zone go to the
        engine, everything else is forwarded whole.
        """

        try:
            request = DNSRecord.parse(data)
        except DNSError as e:
            logger.debug("Dropping undecodable request from %s: %s", client_ip, e)
            return b""

        if not request.questions:
            return make_error_response(request, RCODE.FORMERR)

        qname = request.q.qname
        logger.debug(
            "%s query from %s via %s: %s %s",
            "zone" if self.owns(qname) else "forward",
            client_ip,
            listener or "?",
            qname,
            QTYPE.get(request.q.qtype),
        )
        try:
            if self.owns(qname):
                return pack_uncompressed(self.resolve(request))
            return self.forward(data, request, client_ip, listener)
        except Exception:
            logger.exception("Unhandled error while resolving %s", qname)
            return make_servfail_response(request)
