"""
Brief: Tests for lodestar.servers.recursion (ordered upstream fallback).

Inputs:
  - None

Outputs:
  - None
"""

from typing import Callable, Dict, List

import pytest
from dnslib import QTYPE, RR, A, DNSQuestion, DNSRecord

import lodestar.servers.recursion as recursion_mod
from lodestar.config.config_parser import Nameserver
from lodestar.servers.recursion import RecursiveResolver, UpstreamMismatch
from lodestar.servers.transports.tcp import TCPError
from lodestar.servers.transports.udp import UDPError

NS_A = Nameserver("192.0.2.1", 53, 0.5, "udp")
NS_B = Nameserver("192.0.2.2", 53, 0.5, "tcp")
NS_C = Nameserver("192.0.2.3", 53, 0.5, "udp")


def _answering(table: Dict[str, str], **reply_flags) -> Callable[[bytes], bytes]:
    """
    Brief: Build a fake upstream answering names found in table.

    Inputs:
      - table: qname (with trailing dot) -> IPv4 address
      - reply_flags: header attributes to set on the reply (e.g. tc=1)

    Outputs:
      - Callable mapping query bytes to reply bytes.
    """

    def _reply(query: bytes) -> bytes:
        q = DNSRecord.parse(query)
        reply = q.reply()
        for name, value in reply_flags.items():
            setattr(reply.header, name, value)
        for question in q.questions:
            addr = table.get(str(question.qname).lower())
            if addr:
                reply.add_answer(RR(question.qname, QTYPE.A, rdata=A(addr), ttl=60))
        return reply.pack()

    return _reply


def _install(monkeypatch, behaviours: Dict[Nameserver, Callable[[bytes], bytes]]) -> List[tuple]:
    """
    Brief: Replace recursion.exchange with per-nameserver behaviours.

    Inputs:
      - monkeypatch: pytest fixture
      - behaviours: Nameserver -> callable(query_bytes) -> reply bytes (may raise)

    Outputs:
      - list: (nameserver, parsed query) tuples in call order.
    """
    calls: List[tuple] = []

    def fake_exchange(query: bytes, nameserver: Nameserver) -> bytes:
        calls.append((nameserver, DNSRecord.parse(query)))
        return behaviours[nameserver](query)

    monkeypatch.setattr(recursion_mod, "exchange", fake_exchange)
    return calls


def _fail(exc: Exception) -> Callable[[bytes], bytes]:
    def _raise(query: bytes) -> bytes:
        raise exc

    return _raise


def _questions(*names: str):
    out = []
    for name in names:
        out.extend(DNSRecord.question(name).questions)
    return out


def test_resolve_falls_through_to_next_nameserver(monkeypatch) -> None:
    """
    Brief: First nameserver times out; second answers.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None; asserts order of attempts and collected answers.
    """
    calls = _install(
        monkeypatch,
        {
            NS_A: _fail(UDPError("timed out")),
            NS_B: _answering({"example.org.": "93.184.216.34"}),
            NS_C: _fail(AssertionError("must not be reached")),
        },
    )
    answers = RecursiveResolver([NS_A, NS_B, NS_C]).resolve(_questions("example.org"))

    assert [c[0] for c in calls] == [NS_A, NS_B]
    assert [str(rr.rdata) for rr in answers] == ["93.184.216.34"]
    # Every attempt is a fresh recursion-desired query.
    assert all(c[1].header.rd == 1 for c in calls)


def test_resolve_sends_only_pending_questions(monkeypatch) -> None:
    """
    Brief: Answered questions drop out of the next attempt's batch.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    calls = _install(
        monkeypatch,
        {
            NS_A: _answering({"a.example.org.": "192.0.2.10"}),
            NS_B: _answering({"b.example.org.": "192.0.2.11"}),
        },
    )
    answers = RecursiveResolver([NS_A, NS_B]).resolve(
        _questions("a.example.org", "b.example.org")
    )

    assert [str(q.qname) for q in calls[0][1].questions] == ["a.example.org.", "b.example.org."]
    assert [str(q.qname) for q in calls[1][1].questions] == ["b.example.org."]
    assert sorted(str(rr.rdata) for rr in answers) == ["192.0.2.10", "192.0.2.11"]


def test_resolve_sends_every_type_for_the_same_name(monkeypatch) -> None:
    """
    Brief: Questions sharing a name but differing in type all go upstream.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None; asserts both A and AAAA questions are in the first attempt.
    """
    calls = _install(monkeypatch, {NS_A: _fail(UDPError("timed out")), NS_B: _fail(UDPError("x"))})
    questions = [
        DNSQuestion("a.example.org.", QTYPE.A),
        DNSQuestion("a.example.org.", QTYPE.AAAA),
    ]
    RecursiveResolver([NS_A, NS_B]).resolve(questions)

    for _, sent in calls:
        assert [(str(q.qname), QTYPE.get(q.qtype)) for q in sent.questions] == [
            ("a.example.org.", "A"),
            ("a.example.org.", "AAAA"),
        ]
    assert len(calls) == 2


def test_resolve_answer_clears_all_questions_for_that_name(monkeypatch) -> None:
    calls = _install(
        monkeypatch,
        {
            NS_A: _answering({"a.example.org.": "192.0.2.4"}),
            NS_B: _fail(AssertionError("must not be reached")),
        },
    )
    RecursiveResolver([NS_A, NS_B]).resolve(
        [DNSQuestion("a.example.org.", QTYPE.A), DNSQuestion("a.example.org.", QTYPE.MX)]
    )
    assert [c[0] for c in calls] == [NS_A]


def test_resolve_stops_once_nothing_is_pending(monkeypatch) -> None:
    calls = _install(
        monkeypatch,
        {
            NS_A: _answering({"example.org.": "192.0.2.1"}),
            NS_B: _fail(AssertionError("must not be reached")),
        },
    )
    RecursiveResolver([NS_A, NS_B]).resolve(_questions("example.org"))
    assert [c[0] for c in calls] == [NS_A]


def test_resolve_keeps_truncated_partial_answers(monkeypatch) -> None:
    """
    Brief: A TC=1 reply still contributes its answers.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    _install(monkeypatch, {NS_A: _answering({"example.org.": "192.0.2.7"}, tc=1)})
    answers = RecursiveResolver([NS_A]).resolve(_questions("example.org"))
    assert [str(rr.rdata) for rr in answers] == ["192.0.2.7"]


def test_resolve_keeps_answers_for_other_owner_names(monkeypatch) -> None:
    """
    Brief: Extra answers (e.g. CNAME targets) are appended, question stays pending.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """

    def _other_owner(query: bytes) -> bytes:
        q = DNSRecord.parse(query)
        reply = q.reply()
        reply.add_answer(RR("target.example.net.", QTYPE.A, rdata=A("192.0.2.99"), ttl=5))
        return reply.pack()

    calls = _install(
        monkeypatch,
        {NS_A: _other_owner, NS_B: _answering({"alias.example.org.": "192.0.2.5"})},
    )
    answers = RecursiveResolver([NS_A, NS_B]).resolve(_questions("alias.example.org"))
    assert len(calls) == 2
    assert [str(rr.rname) for rr in answers] == ["target.example.net.", "alias.example.org."]


def test_resolve_treats_mismatched_reply_id_as_failure(monkeypatch) -> None:
    def _wrong_id(query: bytes) -> bytes:
        reply = DNSRecord.parse(_answering({"example.org.": "192.0.2.66"})(query))
        reply.header.id = (reply.header.id + 1) & 0xFFFF
        return reply.pack()

    calls = _install(
        monkeypatch,
        {NS_A: _wrong_id, NS_B: _answering({"example.org.": "192.0.2.1"})},
    )
    answers = RecursiveResolver([NS_A, NS_B]).resolve(_questions("example.org"))
    assert len(calls) == 2
    assert [str(rr.rdata) for rr in answers] == ["192.0.2.1"]


def test_resolve_returns_empty_when_all_fail(monkeypatch) -> None:
    """
    Brief: Every nameserver failing leaves the answer list empty.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    _install(
        monkeypatch,
        {
            NS_A: _fail(UDPError("refused")),
            NS_B: _fail(TCPError("reset")),
            NS_C: lambda q: b"\x00garbage",
        },
    )
    assert RecursiveResolver([NS_A, NS_B, NS_C]).resolve(_questions("example.org")) == []


def test_resolve_with_no_nameservers() -> None:
    assert RecursiveResolver([]).resolve(_questions("example.org")) == []


def test_forward_returns_first_usable_reply_verbatim(monkeypatch) -> None:
    """
    Brief: forward() relays the query bytes and returns the raw reply.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    upstream = _answering({"example.org.": "192.0.2.42"})
    calls = _install(monkeypatch, {NS_A: _fail(TCPError("timeout")), NS_B: upstream})
    query = DNSRecord.question("example.org").pack()

    wire, ns = RecursiveResolver([NS_A, NS_B]).forward(query)

    assert ns == NS_B
    assert wire == upstream(query)
    assert [c[1].pack() for c in calls] == [query, query]


def test_forward_all_failed_returns_none(monkeypatch) -> None:
    _install(monkeypatch, {NS_A: _fail(UDPError("x"))})
    query = DNSRecord.question("example.org").pack()
    assert RecursiveResolver([NS_A]).forward(query) == (None, None)
    assert RecursiveResolver([]).forward(query) == (None, None)


def test_exchange_dispatches_on_transport(monkeypatch) -> None:
    """
    Brief: exchange() picks udp_query/tcp_query and converts the timeout to ms.

    Inputs:
      - monkeypatch: pytest fixture

    Outputs:
      - None
    """
    seen = []
    monkeypatch.setattr(
        recursion_mod,
        "udp_query",
        lambda host, port, q, timeout_ms: seen.append(("udp", host, port, timeout_ms)) or b"u",
    )
    monkeypatch.setattr(
        recursion_mod,
        "tcp_query",
        lambda host, port, q, timeout_ms: seen.append(("tcp", host, port, timeout_ms)) or b"t",
    )
    assert recursion_mod.exchange(b"q", Nameserver("192.0.2.1", 5353, 1.5, "udp")) == b"u"
    assert recursion_mod.exchange(b"q", Nameserver("192.0.2.2", 53, 0.25, "tcp")) == b"t"
    assert seen == [("udp", "192.0.2.1", 5353, 1500), ("tcp", "192.0.2.2", 53, 250)]


def test_upstream_mismatch_is_a_value_error() -> None:
    assert issubclass(UpstreamMismatch, ValueError)
