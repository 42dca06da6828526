#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Automated tests"""

import ipaddress
import json
import time
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

import dns.exception
import dns.resolver

import checkspf
import checkspf.macros
import checkspf.parser
import checkspf.spf
import checkspf.utils
from checkspf._constants import SYNTAX_ERROR_MARKER
from checkspf.macros import MacroContext, expand_macros
from checkspf.parser import Mechanism, Modifier, parse_spf_record
from checkspf.spf import SPFChecker


class FakeDNSResolver(object):
    """An in-memory stand-in for checkspf.utils.DNSResolver"""

    def __init__(self, txt=None, a=None, aaaa=None, mx=None, ptr=None, errors=None):
        self.zones = {
            "TXT": txt or {},
            "A": a or {},
            "AAAA": aaaa or {},
            "MX": mx or {},
            "PTR": ptr or {},
        }
        self.errors = errors or {}
        self.queries = []
        self.deadlines = []

    def _query(self, record_type, name, deadline):
        self.queries.append((record_type, name))
        self.deadlines.append(deadline)
        if (record_type, name) in self.errors:
            raise self.errors[(record_type, name)]
        zone = self.zones[record_type]
        if name in zone:
            return list(zone[name])
        for other_zone in self.zones.values():
            if name in other_zone:
                # The name exists, but has no records of this type
                return None
        raise checkspf.utils.DNSExceptionNXDOMAIN(f"The domain {name} does not exist.")

    def lookup_txt(self, domain, *, deadline=None):
        records = self._query("TXT", domain, deadline)
        if records is None:
            raise checkspf.utils.DNSExceptionNoAnswer(
                f"The domain {domain} does not have any TXT records."
            )
        return records

    def lookup_addresses(self, domain, *, version=None, deadline=None):
        record_types = {4: ["A"], 6: ["AAAA"], None: ["A", "AAAA"]}[version]
        addresses = []
        for record_type in record_types:
            records = self._query(record_type, domain, deadline) or []
            addresses += [ipaddress.ip_address(record) for record in records]
        return addresses

    def lookup_mx(self, domain, *, deadline=None):
        return self._query("MX", domain, deadline) or []

    def lookup_ptr(self, ip_address, *, deadline=None):
        return self._query("PTR", str(ip_address), deadline) or []


def mock_resolver(side_effect):
    resolver = MagicMock()
    resolver.resolve.side_effect = side_effect
    return resolver


RFC_MACRO_CONTEXT = MacroContext(
    ip=ipaddress.ip_address("192.0.2.3"),
    sender="strong-bad@email.example.com",
    local_part="strong-bad",
    sender_domain="email.example.com",
    domain="email.example.com",
)


class Test(unittest.TestCase):
    def check(
        self,
        dns_resolver,
        ip_address="192.0.2.1",
        domain="example.com",
        sender="user@example.com",
        **kwargs,
    ):
        checker = SPFChecker(dns_resolver, **kwargs)
        return checker.check_host(ip_address, domain, sender)

    def testValidateDomain(self):
        """Domains are normalized to lowercase ASCII without a trailing dot"""
        self.assertEqual(checkspf.validate_domain("example.ORG."), "example.org")
        self.assertEqual(checkspf.validate_domain(" Example.COM "), "example.com")
        self.assertEqual(checkspf.validate_domain("example.123"), "example.123")
        self.assertEqual(
            checkspf.validate_domain("bücher.example"), "xn--bcher-kva.example"
        )
        self.assertEqual(
            checkspf.validate_domain("xn--bcher-kva.example"), "xn--bcher-kva.example"
        )
        self.assertEqual(
            checkspf.validate_domain("_spf.Example.com"), "_spf.example.com"
        )
        self.assertEqual(checkspf.validate_domain("example\u3002com"), "example.com")
        self.assertEqual(checkspf.validate_domain("example\uff0ecom"), "example.com")
        self.assertEqual(
            checkspf.validate_domain("\u4f8b\u3048\u3002\u30c6\u30b9\u30c8"),
            "xn--r8jz45g.xn--zckzah",
        )

    def testInvalidDomains(self):
        """Invalid domains raise the matching DomainValidationError subclass"""
        utils = checkspf.utils
        cases = [
            ("localhost", utils.SingleLabelError),
            ("foo..bar.com", utils.EmptyLabelError),
            (".bar.com", utils.EmptyLabelError),
            ("-foo.app", utils.IDNAConversionError),
            ("foo-.app", utils.IDNAConversionError),
            ("foo bar.com", utils.IDNAConversionError),
            ("a" * 64 + ".com", utils.LabelTooLongError),
        ]
        for domain, error in cases:
            with self.assertRaises(error, msg=domain) as context:
                utils.validate_domain(domain)
            self.assertIsInstance(context.exception, utils.DomainValidationError)
            self.assertIsInstance(context.exception, ValueError)

    def testDomainLengthLimit(self):
        """Domains may be 255 octets long, but no longer"""
        labels = ["a" * 63, "b" * 63, "c" * 63]
        domain = ".".join(labels + ["d" * 59]) + ".com"
        self.assertEqual(len(domain), 255)
        self.assertEqual(checkspf.validate_domain(domain), domain)
        domain = ".".join(labels + ["d" * 60]) + ".com"
        self.assertRaises(
            checkspf.utils.DomainTooLongError, checkspf.validate_domain, domain
        )

    def testNormalizeDomain(self):
        """Zero-width characters are removed"""
        self.assertEqual(
            checkspf.utils.normalize_domain("exa\u200bmple.COM"), "example.com"
        )

    def testMacroExpansionRFCExamples(self):
        """Macros expand like the examples in RFC 7208 § 7.4"""
        examples = {
            "%{s}": "strong-bad@email.example.com",
            "%{o}": "email.example.com",
            "%{d}": "email.example.com",
            "%{d4}": "email.example.com",
            "%{d3}": "email.example.com",
            "%{d2}": "example.com",
            "%{d1}": "com",
            "%{dr}": "com.example.email",
            "%{d2r}": "example.email",
            "%{l}": "strong-bad",
            "%{l-}": "strong.bad",
            "%{lr}": "strong-bad",
            "%{lr-}": "bad.strong",
            "%{l1r-}": "strong",
            "%{ir}.%{v}._spf.%{d2}": "3.2.0.192.in-addr._spf.example.com",
            "%{lr-}.lp._spf.%{d2}": "bad.strong.lp._spf.example.com",
            "%{lr-}.lp.%{ir}.%{v}._spf.%{d2}": (
                "bad.strong.lp.3.2.0.192.in-addr._spf.example.com"
            ),
            "%{ir}.%{v}.%{l1r-}.lp._spf.%{d2}": (
                "3.2.0.192.in-addr.strong.lp._spf.example.com"
            ),
            "%{d2}.trusted-domains.example.net": (
                "example.com.trusted-domains.example.net"
            ),
        }
        for macro_string, expected in examples.items():
            self.assertEqual(
                expand_macros(macro_string, RFC_MACRO_CONTEXT), expected, macro_string
            )

    def testIPv6MacroExpansion(self):
        """IPv6 addresses expand to dot-separated nibbles"""
        context = RFC_MACRO_CONTEXT._replace(
            ip=ipaddress.ip_address("2001:db8::cb01")
        )
        expected = "1.0.b.c." + "0." * 20 + "8.b.d.0.1.0.0.2.ip6._spf.example.com"
        self.assertEqual(expand_macros("%{ir}.%{v}._spf.%{d2}", context), expected)

    def testMacroEscapes(self):
        """Escapes and uppercase macro letters"""
        self.assertEqual(expand_macros("%%%_%-", RFC_MACRO_CONTEXT), "% %20")
        self.assertEqual(
            expand_macros("%{S}", RFC_MACRO_CONTEXT),
            "strong-bad%40email.example.com",
        )

    def testExplanationMacros(self):
        """c, r and t are only allowed in explanation strings"""
        context = RFC_MACRO_CONTEXT._replace(timestamp=1234)
        for macro_string in ["%{c}", "%{r}", "%{t}"]:
            self.assertRaises(
                checkspf.SPFSyntaxError, expand_macros, macro_string, context
            )
        self.assertEqual(
            expand_macros("%{c} %{r} %{t}", context, explanation=True),
            "192.0.2.3 unknown 1234",
        )
        self.assertEqual(
            expand_macros(
                "%{i} is not one of %{d}'s designated mail servers.",
                context,
                explanation=True,
            ),
            "192.0.2.3 is not one of email.example.com's designated mail servers.",
        )

    def testInvalidMacros(self):
        """Invalid macro syntax is a syntax error that marks the position"""
        for macro_string in ["%{x}", "%", "%{d0}", "%{d", "%a", "ab%{z}.example"]:
            with self.assertRaises(checkspf.SPFSyntaxError, msg=macro_string) as e:
                checkspf.macros.validate_macro_string(macro_string)
            self.assertIn(SYNTAX_ERROR_MARKER, str(e.exception))

    def testExpandedDomainSpecTooLong(self):
        """Expanding a domain-spec beyond 253 characters is an error"""
        context = RFC_MACRO_CONTEXT._replace(domain="a" * 63 + ".example.com")
        macro_string = "%{d}.%{d}.%{d}.%{d}"
        self.assertRaises(
            checkspf.SPFDomainSpecTooLong, expand_macros, macro_string, context
        )
        expanded = expand_macros(macro_string, context, explanation=True)
        self.assertEqual(len(expanded), 303)

    def testParseIsPure(self):
        """Parsing the same record twice gives equal results"""
        record = (
            "v=spf1 ip4:192.0.2.0/24 a:example.com/24//64 mx "
            "include:_spf.example.net -all"
        )
        self.assertEqual(parse_spf_record(record), parse_spf_record(record))

    def testDefaultQualifier(self):
        """Mechanisms without a qualifier pass"""
        mechanism = parse_spf_record("v=spf1 a").mechanisms[0]
        self.assertEqual(mechanism.qualifier, "+")
        self.assertEqual(mechanism.result, "pass")

    def testQualifierResults(self):
        """Every qualifier maps to a result"""
        parsed_record = parse_spf_record("v=spf1 +all -all ~all ?all")
        results = [mechanism.result for mechanism in parsed_record.mechanisms]
        self.assertEqual(results, ["pass", "fail", "softfail", "neutral"])

        expected_results = {
            "+": "pass",
            "-": "fail",
            "~": "softfail",
            "?": "neutral",
            "": "pass",
        }
        for qualifier, expected_result in expected_results.items():
            dns_resolver = FakeDNSResolver(
                txt={"example.com": [f"v=spf1 {qualifier}all"]}
            )
            result = self.check(dns_resolver)
            self.assertEqual(result["result"], expected_result, qualifier)

    def testEquivalentAddressForms(self):
        """An address without a prefix length equals the same address in /32"""
        self.assertEqual(
            parse_spf_record("v=spf1 ip4:203.0.113.23 -all"),
            parse_spf_record("v=spf1 ip4:203.0.113.23/32 -all"),
        )
        parsed_record = parse_spf_record("v=spf1 all")
        self.assertEqual(parsed_record.mechanisms, (Mechanism("+", "all"),))

    def testIP4Canonicalization(self):
        """ip4 addresses without a prefix length are /32 networks"""
        parsed_record = parse_spf_record("v=spf1 ip4:192.0.2.1 ip4:192.0.2.5/24 -all")
        self.assertEqual(
            parsed_record.mechanisms[0],
            Mechanism("+", "ip4", network=ipaddress.ip_network("192.0.2.1/32")),
        )
        self.assertEqual(
            parsed_record.mechanisms[1].network, ipaddress.ip_network("192.0.2.0/24")
        )
        self.assertEqual(str(parsed_record.mechanisms[0]), "ip4:192.0.2.1/32")

    def testInvalidIPMechanisms(self):
        """Bad addresses and prefix lengths are syntax errors"""
        terms = [
            "ip4:192.0.2.0/99",
            "ip6:2001:db8::/129",
            "ip4:192.0.2.0/24/24",
            "ip4:2001:db8::1",
            "ip6:192.0.2.1",
            "ip4:192.0.2.0/abc",
            "ip4:192.0.2.0/-1",
            "ip4:192.0.2.0/024",
            "ip6:2001:db8::/064",
            "ip4:",
        ]
        for term in terms:
            self.assertRaises(
                checkspf.SPFSyntaxError, parse_spf_record, f"v=spf1 {term} -all"
            )

    def testDualCIDRLengths(self):
        """a and mx accept IPv4 and IPv6 prefix lengths"""
        mechanisms = parse_spf_record(
            "v=spf1 a/24 a:example.com/24//64 mx//64 a/24/64 mx:%{d}/30"
        ).mechanisms
        self.assertEqual(
            [(m.domain_spec, m.ip4_cidr_length, m.ip6_cidr_length) for m in mechanisms],
            [
                ("", 24, None),
                ("example.com", 24, 64),
                ("", None, 64),
                ("", 24, 64),
                ("%{d}", 30, None),
            ],
        )
        self.assertTrue(mechanisms[4].macro)
        invalid_terms = [
            "a/33",
            "a/032",
            "mx//0128",
            "mx//129",
            "a:example.com/24///64",
            "a/",
            "mx/24//",
        ]
        for term in invalid_terms:
            self.assertRaises(
                checkspf.SPFSyntaxError, parse_spf_record, f"v=spf1 {term}"
            )

    def testMechanismNamesAreCaseInsensitive(self):
        """Mechanism names and the version are case-insensitive"""
        parsed_record = parse_spf_record("V=SPF1 INCLUDE:_spf.Example.com MX -ALL")
        self.assertEqual(
            [mechanism.kind for mechanism in parsed_record.mechanisms],
            ["include", "mx", "all"],
        )
        self.assertEqual(parsed_record.mechanisms[0].domain_spec, "_spf.example.com")

    def testMissingVersion(self):
        """Records must start with v=spf1 and have at least one term"""
        for record in ["spf1 -all", "v=spf10 -all", "v=spf1", "v=spf1   ", ""]:
            self.assertRaises(checkspf.SPFSyntaxError, parse_spf_record, record)

    def testUnknownTerm(self):
        """Unknown mechanisms are errors that point at the term"""
        with self.assertRaises(checkspf.SPFSyntaxError) as context:
            parse_spf_record("v=spf1 foo -all", domain="example.com")
        message = str(context.exception)
        self.assertIn(f"{SYNTAX_ERROR_MARKER}foo", message)
        self.assertIn("position 7", message)
        self.assertTrue(message.startswith("example.com: "))
        for term in ["all:foo", "include", "include:", "exists:", "ptr:", "+"]:
            self.assertRaises(
                checkspf.SPFSyntaxError, parse_spf_record, f"v=spf1 {term}"
            )

    def testModifiers(self):
        """redirect, exp and unknown modifiers"""
        parsed_record = parse_spf_record(
            "v=spf1 -all redirect=_spf.Example.com exp=explain.%{d} foo=bar"
        )
        self.assertEqual(
            parsed_record.redirect, Modifier("redirect", "_spf.example.com", False)
        )
        self.assertEqual(parsed_record.exp, Modifier("exp", "explain.%{d}", True))
        self.assertEqual(parsed_record.unknown, (Modifier("foo", "bar", False),))
        invalid_records = [
            "v=spf1 redirect=a.example.com redirect=b.example.com",
            "v=spf1 exp=a.example.com exp=b.example.com",
            "v=spf1 redirect=",
            "v=spf1 exp=%{x}",
            "v=spf1 redirect=localhost",
            "v=spf1 foo=",
        ]
        for record in invalid_records:
            self.assertRaises(checkspf.SPFSyntaxError, parse_spf_record, record)

    def testDomainSpecs(self):
        """Literal domain-specs are validated, macro domain-specs are kept"""
        parsed_record = parse_spf_record("v=spf1 exists:%{ir}.%{v}._spf.%{d2} ptr")
        exists, ptr = parsed_record.mechanisms
        self.assertEqual(exists.domain_spec, "%{ir}.%{v}._spf.%{d2}")
        self.assertTrue(exists.macro)
        self.assertEqual(ptr.domain_spec, "")
        for term in ["include:-bad.example.com", "a:localhost", "mx:foo..example"]:
            self.assertRaises(
                checkspf.SPFSyntaxError, parse_spf_record, f"v=spf1 {term}"
            )

    def testRecordToString(self):
        """Parsed records render back to record syntax"""
        record = "v=spf1 a mx:example.com/24//64 ~include:_spf.example.net -all"
        self.assertEqual(str(parse_spf_record(record)), record)

    def testQuerySPFRecord(self):
        """Only TXT records with the v=spf1 version are selected"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["google-site-verification=abc", "V=SPF1 -ALL"],
                "example.net": ["v=spf10 -all"],
                "example.org": ["v=spf1 -all", "v=spf1 +all"],
            },
            a={"example.info": ["192.0.2.1"]},
        )
        query = checkspf.query_spf_record
        self.assertEqual(query("example.com", dns_resolver), "v=spf1 -all")
        self.assertEqual(query("example.net", dns_resolver), "")
        self.assertRaises(
            checkspf.MultipleSPFRTXTRecords, query, "example.org", dns_resolver
        )
        self.assertRaises(
            checkspf.SPFRecordNotFound, query, "example.info", dns_resolver
        )
        self.assertRaises(
            checkspf.SPFRecordNotFound, query, "missing.example", dns_resolver
        )

    def testQuerySPFRecordErrors(self):
        """DNS errors are sorted into temporary and permanent errors"""
        dns_resolver = FakeDNSResolver(
            errors={
                ("TXT", "example.com"): checkspf.utils.DNSExceptionTemporary(
                    "SERVFAIL"
                ),
                ("TXT", "example.net"): checkspf.utils.DNSException("REFUSED"),
                ("TXT", "example.org"): checkspf.DNSDeadlineExceeded("late"),
            }
        )
        query = checkspf.query_spf_record
        self.assertRaises(checkspf.SPFTempError, query, "example.com", dns_resolver)
        self.assertRaises(checkspf.SPFDNSError, query, "example.net", dns_resolver)
        self.assertRaises(
            checkspf.DNSDeadlineExceeded, query, "example.org", dns_resolver
        )

    def testDNSResolverErrors(self):
        """dnspython errors are translated"""
        utils = checkspf.utils
        dns_resolver = utils.DNSResolver(
            resolver=mock_resolver(dns.resolver.NXDOMAIN())
        )
        self.assertRaises(
            utils.DNSExceptionNXDOMAIN, dns_resolver.lookup_txt, "example.com"
        )
        self.assertRaises(
            utils.DNSExceptionNXDOMAIN, dns_resolver.lookup_addresses, "example.com"
        )

        dns_resolver = utils.DNSResolver(
            resolver=mock_resolver(dns.resolver.NoAnswer())
        )
        self.assertRaises(
            utils.DNSExceptionNoAnswer, dns_resolver.lookup_txt, "example.com"
        )
        self.assertIsInstance(
            utils.DNSExceptionNoAnswer("x"), utils.DNSRecordNotFound
        )
        self.assertEqual(dns_resolver.lookup_addresses("example.com"), [])
        self.assertEqual(dns_resolver.lookup_mx("example.com"), [])
        self.assertEqual(
            dns_resolver.lookup_ptr(ipaddress.ip_address("192.0.2.1")), []
        )

        dns_resolver = utils.DNSResolver(
            resolver=mock_resolver(dns.resolver.NoNameservers())
        )
        self.assertRaises(
            utils.DNSExceptionTemporary, dns_resolver.lookup_txt, "example.com"
        )

    def testDNSResolverTimeoutRetries(self):
        """Timeouts are retried, then reported as temporary errors"""
        resolver = mock_resolver(dns.exception.Timeout(timeout=1.0))
        dns_resolver = checkspf.utils.DNSResolver(resolver=resolver, timeout_retries=2)
        self.assertRaises(
            checkspf.utils.DNSExceptionTemporary, dns_resolver.lookup_txt, "example.com"
        )
        self.assertEqual(resolver.resolve.call_count, 3)

    def testDNSResolverDeadline(self):
        """Queries are capped by the deadline and not made after it"""
        resolver = mock_resolver(
            lambda *args, **kwargs: [SimpleNamespace(strings=[b"v=spf1 ", b"-all"])]
        )
        dns_resolver = checkspf.utils.DNSResolver(resolver=resolver, timeout=2.0)
        self.assertRaises(
            checkspf.DNSDeadlineExceeded,
            dns_resolver.lookup_txt,
            "example.com",
            deadline=time.monotonic() - 1,
        )
        self.assertEqual(resolver.resolve.call_count, 0)
        self.assertIsInstance(checkspf.DNSDeadlineExceeded("x"), TimeoutError)

        deadline = time.monotonic() + 0.5
        records = dns_resolver.lookup_txt("example.com", deadline=deadline)
        self.assertEqual(records, ["v=spf1 -all"])
        self.assertLessEqual(resolver.resolve.call_args[1]["lifetime"], 0.5)

    def testDNSResolverAnswers(self):
        """Answers are converted to simple values"""

        def resolve(domain, record_type, lifetime=None):
            if record_type == "A":
                return [SimpleNamespace(address="192.0.2.1")]
            if record_type == "AAAA":
                return [SimpleNamespace(address="2001:db8::1")]
            if record_type == "MX":
                return [
                    SimpleNamespace(exchange="mx2.example.com.", preference=20),
                    SimpleNamespace(exchange="MX1.example.com.", preference=10),
                    SimpleNamespace(exchange=".", preference=0),
                ]
            if record_type == "PTR":
                return [SimpleNamespace(target="Mail.example.com.")]
            raise dns.resolver.NoAnswer()

        resolver = mock_resolver(resolve)
        dns_resolver = checkspf.utils.DNSResolver(resolver=resolver)
        self.assertEqual(
            dns_resolver.lookup_addresses("example.com"),
            [ipaddress.ip_address("192.0.2.1"), ipaddress.ip_address("2001:db8::1")],
        )
        self.assertEqual(
            dns_resolver.lookup_addresses("example.com", version=6),
            [ipaddress.ip_address("2001:db8::1")],
        )
        self.assertEqual(
            dns_resolver.lookup_mx("example.com"),
            ["mx1.example.com", "mx2.example.com"],
        )
        self.assertEqual(
            dns_resolver.lookup_ptr(ipaddress.ip_address("192.0.2.1")),
            ["mail.example.com"],
        )
        self.assertEqual(
            resolver.resolve.call_args[0][0], "1.2.0.192.in-addr.arpa."
        )

    def testDNSResolverCache(self):
        """Cached answers are reused"""
        resolver = mock_resolver(
            lambda *args, **kwargs: [SimpleNamespace(strings=[b"v=spf1 -all"])]
        )
        dns_resolver = checkspf.utils.DNSResolver(
            resolver=resolver, cache=checkspf.DNSResolver.new_cache()
        )
        dns_resolver.lookup_txt("example.com")
        self.assertEqual(dns_resolver.lookup_txt("example.com"), ["v=spf1 -all"])
        self.assertEqual(resolver.resolve.call_count, 1)

    def testFirstMatchWins(self):
        """The first matching mechanism decides the result"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 ip4:192.0.2.0/24 -all"],
                "example.net": ["v=spf1 -all ip4:192.0.2.1"],
            }
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "pass")
        self.assertIsNone(result["cause"])
        self.assertEqual(
            result["matches"],
            [{"domain": "example.com", "mechanism": "ip4:192.0.2.0/24"}],
        )
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "fail")
        result = self.check(dns_resolver, domain="example.net")
        self.assertEqual(result["result"], "fail")

    def testNeutralWithoutMatch(self):
        """Records without a matching mechanism are neutral"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 ip4:198.51.100.0/24"]}
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "neutral")
        self.assertEqual(result["matches"], [])

    def testNoPolicy(self):
        """Missing records, missing policies and invalid domains"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["google-site-verification=abc"]}
        )
        result = self.check(dns_resolver)
        self.assertIsNone(result["result"])
        self.assertIsInstance(result["cause"], checkspf.SPFPolicyAbsent)

        result = self.check(dns_resolver, domain="example.net")
        self.assertEqual(result["result"], "none")
        self.assertIsInstance(result["cause"], checkspf.SPFRecordNotFound)

        result = self.check(dns_resolver, domain="localhost")
        self.assertEqual(result["result"], "none")
        self.assertIsInstance(result["cause"], checkspf.utils.SingleLabelError)
        self.assertEqual(result["dns_lookups"], 0)

    def testRecordErrors(self):
        """Multiple records, syntax errors and DNS failures"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 -all", "v=spf1 +all"],
                "example.net": ["v=spf1 ip4:192.0.2.0/99 -all"],
            },
            errors={
                ("TXT", "example.org"): checkspf.utils.DNSExceptionTemporary("SERVFAIL")
            },
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.MultipleSPFRTXTRecords)
        result = self.check(dns_resolver, domain="example.net")
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFSyntaxError)
        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["result"], "temperror")
        self.assertIsInstance(result["cause"], checkspf.SPFTempError)

    def testInvalidIPAddress(self):
        """Invalid client IP addresses raise ValueError"""
        dns_resolver = FakeDNSResolver()
        self.assertRaises(ValueError, self.check, dns_resolver, ip_address="nope")

    def testDNSLookupLimit(self):
        """More than 10 DNS lookups is a permerror"""
        a_records = {f"a{i}.example.com": [f"198.51.100.{i}"] for i in range(11)}
        terms = " ".join(f"a:a{i}.example.com" for i in range(11))
        dns_resolver = FakeDNSResolver(
            txt={"example.com": [f"v=spf1 {terms} -all"]}, a=a_records
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFTooManyDNSLookups)
        self.assertEqual(result["dns_lookups"], 10)
        self.assertEqual(result["cause"].data["dns_lookups"], 11)

        terms = " ".join(f"a:a{i}.example.com" for i in range(10))
        dns_resolver.zones["TXT"]["example.com"] = [f"v=spf1 {terms} -all"]
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "fail")
        self.assertEqual(result["dns_lookups"], 10)

    def testConfiguredDNSLookupLimit(self):
        """The lookup limit is configured per checker"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 a mx -all"]},
            a={"example.com": ["198.51.100.1"]},
            mx={"example.com": []},
        )
        result = self.check(dns_resolver, max_dns_lookups=1)
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFTooManyDNSLookups)

    def testVoidDNSLookupLimit(self):
        """More than two lookups without answers is a permerror"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": [
                    "v=spf1 a:void1.example.com a:void2.example.com "
                    "a:void3.example.com -all"
                ],
                "example.net": [
                    "v=spf1 a:void1.example.com a:void2.example.com -all"
                ],
            }
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFTooManyVoidDNSLookups)
        self.assertEqual(result["void_dns_lookups"], 2)
        result = self.check(dns_resolver, domain="example.net")
        self.assertEqual(result["result"], "fail")
        self.assertEqual(result["void_dns_lookups"], 2)

    def testIncludeSemantics(self):
        """include matches only when the included policy passes"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 include:_spf.example.net -all"],
                "_spf.example.net": ["v=spf1 ip4:192.0.2.0/24 -all"],
                "example.org": ["v=spf1 include:neutral.example.net -all"],
                "neutral.example.net": ["v=spf1 ?all"],
            }
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "pass")
        self.assertEqual(result["dns_lookups"], 1)
        self.assertEqual(
            result["matches"],
            [
                {"domain": "example.com", "mechanism": "include:_spf.example.net"},
                {"domain": "_spf.example.net", "mechanism": "ip4:192.0.2.0/24"},
            ],
        )
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "fail")
        self.assertEqual(
            result["matches"], [{"domain": "example.com", "mechanism": "-all"}]
        )
        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["result"], "fail")

    def testIncludePassPropagates(self):
        """An included +all passes any client, an included -all does not match"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 include:good.example -all"],
                "good.example": ["v=spf1 +all"],
            }
        )
        for ip_address in ["203.0.113.5", "198.51.100.1", "2001:db8::1"]:
            result = self.check(dns_resolver, ip_address=ip_address)
            self.assertEqual(result["result"], "pass", ip_address)
        dns_resolver.zones["TXT"]["good.example"] = ["v=spf1 -all"]
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "fail")
        self.assertEqual(
            result["matches"], [{"domain": "example.com", "mechanism": "-all"}]
        )

    def testRedirectOnlyWithoutMatch(self):
        """redirect is consulted only when no mechanism matches"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 ip4:203.0.113.0/24 redirect=other.example"],
                "other.example": ["v=spf1 ?all"],
            }
        )
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "neutral")
        self.assertIn(("TXT", "other.example"), dns_resolver.queries)
        dns_resolver.queries.clear()
        result = self.check(dns_resolver, ip_address="203.0.113.5")
        self.assertEqual(result["result"], "pass")
        self.assertNotIn(("TXT", "other.example"), dns_resolver.queries)

    def testIncludeErrors(self):
        """Errors in included policies"""
        dns_resolver = FakeDNSResolver(
            txt={
                "missing.example.com": ["v=spf1 include:missing.example.net -all"],
                "absent.example.com": ["v=spf1 include:absent.example.net -all"],
                "absent.example.net": ["google-site-verification=abc"],
                "temp.example.com": ["v=spf1 include:temp.example.net -all"],
                "perm.example.com": ["v=spf1 include:perm.example.net -all"],
                "perm.example.net": ["v=spf1 foo"],
            },
            errors={
                ("TXT", "temp.example.net"): checkspf.utils.DNSExceptionTemporary(
                    "SERVFAIL"
                )
            },
        )
        expected_results = {
            "missing.example.com": "permerror",
            "absent.example.com": "permerror",
            "temp.example.com": "temperror",
            "perm.example.com": "permerror",
        }
        for domain, expected_result in expected_results.items():
            result = self.check(dns_resolver, domain=domain)
            self.assertEqual(result["result"], expected_result, domain)

    def testRedirect(self):
        """redirect is only followed when nothing matches"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 redirect=_spf.example.net"],
                "_spf.example.net": ["v=spf1 ip4:192.0.2.0/24 -all"],
                "example.org": ["v=spf1 ip4:192.0.2.1 redirect=_spf.example.org"],
                "example.info": ["v=spf1 -all redirect=_spf.example.info"],
                "missing.example.com": ["v=spf1 redirect=missing.example.net"],
            }
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "pass")
        self.assertEqual(result["dns_lookups"], 1)
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "fail")

        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["result"], "pass")
        self.assertNotIn(("TXT", "_spf.example.org"), dns_resolver.queries)
        result = self.check(dns_resolver, domain="example.info")
        self.assertEqual(result["result"], "fail")
        self.assertNotIn(("TXT", "_spf.example.info"), dns_resolver.queries)

        result = self.check(dns_resolver, domain="missing.example.com")
        self.assertEqual(result["result"], "permerror")

    def testLoops(self):
        """include and redirect loops are permerrors"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 include:example.net -all"],
                "example.net": ["v=spf1 include:example.com -all"],
                "example.org": ["v=spf1 redirect=example.info"],
                "example.info": ["v=spf1 redirect=example.org"],
                "self.example.com": ["v=spf1 include:self.example.com -all"],
            }
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFIncludeLoop)
        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFRedirectLoop)
        result = self.check(dns_resolver, domain="self.example.com")
        self.assertIsInstance(result["cause"], checkspf.SPFIncludeLoop)

    def testRecursionDepth(self):
        """Deeply nested includes are permerrors"""
        txt = {
            f"d{i}.example.com": [f"v=spf1 include:d{i + 1}.example.com -all"]
            for i in range(3)
        }
        txt["d3.example.com"] = ["v=spf1 +all"]
        dns_resolver = FakeDNSResolver(txt=txt)
        result = self.check(dns_resolver, domain="d0.example.com")
        self.assertEqual(result["result"], "pass")
        result = self.check(
            dns_resolver, domain="d0.example.com", max_recursion_depth=2
        )
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFRecursionTooDeep)

    def testMXMechanism(self):
        """mx compares the addresses of each MX host"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 mx -all"],
                "example.net": ["v=spf1 mx:example.com/24 -all"],
                "example.org": ["v=spf1 mx -all"],
                "example.info": ["v=spf1 mx -all"],
            },
            mx={
                "example.com": ["mx1.example.com", "mx2.example.com"],
                "example.info": [f"mx{i}.example.info" for i in range(11)],
            },
            a={"mx1.example.com": ["198.51.100.1"], "mx2.example.com": ["192.0.2.1"]},
        )
        result = self.check(dns_resolver)
        self.assertEqual(result["result"], "pass")
        self.assertEqual(result["dns_lookups"], 3)
        result = self.check(dns_resolver, ip_address="192.0.2.77", domain="example.net")
        self.assertEqual(result["result"], "pass")

        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["result"], "fail")
        self.assertEqual(result["void_dns_lookups"], 1)

        result = self.check(dns_resolver, domain="example.info")
        self.assertEqual(result["result"], "permerror")

    def testAMechanism(self):
        """a compares the A or AAAA records matching the client"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 a -all"],
                "example.net": ["v=spf1 a:example.com//64 -all"],
            },
            a={"example.com": ["192.0.2.1"]},
            aaaa={"example.com": ["2001:db8::1"]},
        )
        self.assertEqual(self.check(dns_resolver)["result"], "pass")
        result = self.check(dns_resolver, ip_address="::ffff:192.0.2.1")
        self.assertEqual(result["result"], "pass")
        result = self.check(dns_resolver, ip_address="2001:db8::1")
        self.assertEqual(result["result"], "pass")
        result = self.check(dns_resolver, ip_address="2001:db8::ffff")
        self.assertEqual(result["result"], "fail")
        result = self.check(
            dns_resolver, ip_address="2001:db8::ffff", domain="example.net"
        )
        self.assertEqual(result["result"], "pass")

    def testIPFamilies(self):
        """ip4 and ip6 only match clients of their own family"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 ip6:2001:db8::/32 ?ip4:0.0.0.0/0 -all"]}
        )
        self.assertEqual(self.check(dns_resolver)["result"], "neutral")
        result = self.check(dns_resolver, ip_address="2001:db8::25")
        self.assertEqual(result["result"], "pass")

    def testExistsMechanism(self):
        """exists matches when the expanded name has an A record"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 exists:%{i}._spf.example.com -all"]},
            a={"192.0.2.1._spf.example.com": ["127.0.0.2"]},
        )
        self.assertEqual(self.check(dns_resolver)["result"], "pass")
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "fail")
        self.assertEqual(result["void_dns_lookups"], 1)

    def testPTRMechanism(self):
        """ptr validates reverse DNS names within the target domain"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 ptr -all"],
                "example.org": ["v=spf1 ptr:example.org -all"],
            },
            ptr={"192.0.2.1": ["mail.example.com", "other.example.org"]},
            a={"mail.example.com": ["192.0.2.1"]},
        )
        self.assertEqual(self.check(dns_resolver)["result"], "pass")
        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["result"], "fail")
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "fail")
        self.assertEqual(result["void_dns_lookups"], 1)

    def testExplanation(self):
        """The exp modifier explains fail results"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 ip4:192.0.2.1 -all exp=explain.example.com"],
                "explain.example.com": [
                    "%{i} is not one of %{d}'s designated mail servers."
                ],
                "example.net": ["v=spf1 -all exp=two.example.net"],
                "two.example.net": ["one", "two"],
                "example.org": ["v=spf1 redirect=example.info exp=top.example.org"],
                "example.info": ["v=spf1 -all exp=info.example.com"],
                "top.example.org": ["top"],
                "info.example.com": ["Rejected by %{d}"],
            }
        )
        result = self.check(dns_resolver, ip_address="198.51.100.1")
        self.assertEqual(result["result"], "fail")
        self.assertEqual(
            result["explanation"],
            "198.51.100.1 is not one of example.com's designated mail servers.",
        )
        self.assertEqual(result["dns_lookups"], 0)
        result = self.check(dns_resolver)
        self.assertIsNone(result["explanation"])

        result = self.check(dns_resolver, domain="example.net")
        self.assertEqual(result["result"], "fail")
        self.assertIsNone(result["explanation"])

        result = self.check(dns_resolver, domain="example.org")
        self.assertEqual(result["explanation"], "Rejected by example.info")

    def testSender(self):
        """Empty senders and senders without a local-part use postmaster"""
        self.assertEqual(
            checkspf.spf.split_sender("user@example.org", "example.com"),
            ("user@example.org", "user", "example.org"),
        )
        self.assertEqual(
            checkspf.spf.split_sender("<>", "example.com"),
            ("postmaster@example.com", "postmaster", "example.com"),
        )
        self.assertEqual(
            checkspf.spf.split_sender("@example.org", "example.com"),
            ("postmaster@example.org", "postmaster", "example.org"),
        )
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 exists:%{l}.%{o}._spf.example.com -all"]},
            a={"postmaster.example.com._spf.example.com": ["127.0.0.2"]},
        )
        for sender in [None, "", "<>"]:
            result = self.check(dns_resolver, sender=sender)
            self.assertEqual(result["result"], "pass", sender)

    def testValidatedDomainMacro(self):
        """The p macro expands to a validated reverse DNS name"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 exists:%{p}.ok.example.com -all"]},
            ptr={"192.0.2.1": ["mail.example.com"]},
            a={
                "mail.example.com": ["192.0.2.1"],
                "mail.example.com.ok.example.com": ["127.0.0.2"],
            },
        )
        self.assertEqual(self.check(dns_resolver)["result"], "pass")

    def testExpandedDomainTooLongIsPermerror(self):
        """Domain-specs that expand beyond 253 characters are permerrors"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 exists:%{s}.%{s}.%{s}.%{s}.example.com"]}
        )
        result = self.check(dns_resolver, sender="a" * 60 + "@example.com")
        self.assertEqual(result["result"], "permerror")
        self.assertIsInstance(result["cause"], checkspf.SPFDomainSpecTooLong)

    def testMechanismDNSErrors(self):
        """DNS failures in mechanisms give temperror or permerror"""
        utils = checkspf.utils
        dns_resolver = FakeDNSResolver(
            txt={
                "a.example.com": ["v=spf1 a:host.example.net -all"],
                "mx.example.com": ["v=spf1 mx:mail.example.net -all"],
                "mxhost.example.com": ["v=spf1 mx:example.org -all"],
                "ptr.example.com": ["v=spf1 ptr -all"],
                "exists.example.com": ["v=spf1 exists:%{i}.bl.example.net -all"],
                "refused.example.com": ["v=spf1 a:refused.example.net -all"],
                "late.example.com": ["v=spf1 mx:late.example.net -all"],
            },
            mx={"example.org": ["mx1.example.org"]},
            errors={
                ("A", "host.example.net"): utils.DNSExceptionTemporary("SERVFAIL"),
                ("MX", "mail.example.net"): utils.DNSException("REFUSED"),
                ("A", "mx1.example.org"): utils.DNSExceptionTemporary("SERVFAIL"),
                ("PTR", "192.0.2.1"): utils.DNSExceptionTemporary("SERVFAIL"),
                ("A", "192.0.2.1.bl.example.net"): utils.DNSExceptionTemporary(
                    "SERVFAIL"
                ),
                ("A", "refused.example.net"): utils.DNSException("REFUSED"),
                ("MX", "late.example.net"): checkspf.DNSDeadlineExceeded("late"),
            },
        )
        expected_errors = {
            "a.example.com": ("temperror", checkspf.SPFTempError),
            "mx.example.com": ("permerror", checkspf.SPFDNSError),
            "mxhost.example.com": ("temperror", checkspf.SPFTempError),
            "ptr.example.com": ("temperror", checkspf.SPFTempError),
            "exists.example.com": ("temperror", checkspf.SPFTempError),
            "refused.example.com": ("permerror", checkspf.SPFDNSError),
        }
        for domain, (expected_result, error_class) in expected_errors.items():
            result = self.check(dns_resolver, domain=domain)
            self.assertEqual(result["result"], expected_result, domain)
            self.assertIsInstance(result["cause"], error_class)

        self.assertRaises(
            checkspf.DNSDeadlineExceeded,
            self.check,
            dns_resolver,
            domain="late.example.com",
        )

    def testIdeographicFullStops(self):
        """Domains written with ideographic full stops are evaluated"""
        dns_resolver = FakeDNSResolver(txt={"example.com": ["v=spf1 +all"]})
        result = self.check(dns_resolver, domain="example。com")
        self.assertEqual(result["result"], "pass")
        self.assertEqual(result["domain"], "example.com")

    def testDeadline(self):
        """Deadlines are passed to every lookup and escape check_host"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 include:example.net -all"],
                "example.net": ["v=spf1 a -all"],
            },
            a={"example.net": ["192.0.2.1"]},
        )
        checker = SPFChecker(dns_resolver)
        result = checker.check_host("192.0.2.1", "example.com", deadline=12345.0)
        self.assertEqual(result["result"], "pass")
        self.assertEqual(set(dns_resolver.deadlines), {12345.0})

        dns_resolver.errors[("A", "example.net")] = checkspf.DNSDeadlineExceeded(
            "late"
        )
        self.assertRaises(
            checkspf.DNSDeadlineExceeded,
            checker.check_host,
            "192.0.2.1",
            "example.com",
        )

    def testCheckDomains(self):
        """Domains are de-duplicated and sorted"""
        dns_resolver = FakeDNSResolver(
            txt={
                "example.com": ["v=spf1 ip4:192.0.2.1 -all"],
                "example.net": ["v=spf1 -all"],
            }
        )
        results = checkspf.check_domains(
            "192.0.2.1",
            ["example.net", "Example.com", "example.com.", ""],
            dns_resolver=dns_resolver,
        )
        self.assertEqual(
            [(result["domain"], result["result"]) for result in results],
            [("example.com", "pass"), ("example.net", "fail")],
        )

    def testResultsOutput(self):
        """Results can be written as JSON and CSV"""
        dns_resolver = FakeDNSResolver(
            txt={"example.com": ["v=spf1 ip4:192.0.2.1 -all"]}
        )
        results = checkspf.check_domains(
            "192.0.2.1", ["example.com", "example.net"], dns_resolver=dns_resolver
        )
        parsed_results = json.loads(checkspf.results_to_json(results))
        self.assertEqual(parsed_results[0]["result"], "pass")
        self.assertIsNone(parsed_results[0]["cause"])
        self.assertEqual(parsed_results[1]["result"], "none")
        self.assertEqual(parsed_results[1]["error_type"], "SPFRecordNotFound")

        csv = checkspf.results_to_csv(results)
        lines = csv.splitlines()
        self.assertTrue(lines[0].startswith("domain,result,error_type,cause"))
        self.assertIn("example.com:ip4:192.0.2.1/32", lines[1])


if __name__ == "__main__":
    unittest.main(verbosity=2)
