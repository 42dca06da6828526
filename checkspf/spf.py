# -*- coding: utf-8 -*-
"""Sender Policy framework (SPF) record evaluation (RFC 7208 check_host)"""

from __future__ import annotations

import contextlib
import ipaddress
import logging
from typing import Optional, TypedDict, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    MAX_DNS_LOOKUPS,
    MAX_MX_HOSTS,
    MAX_PTR_NAMES,
    MAX_RECURSION_DEPTH,
    MAX_VOID_DNS_LOOKUPS,
)
from checkspf.errors import (
    MultipleSPFRTXTRecords,
    SPFDNSError,
    SPFError,
    SPFIncludeLoop,
    SPFPermError,
    SPFPolicyAbsent,
    SPFRecordNotFound,
    SPFRecursionTooDeep,
    SPFRedirectLoop,
    SPFTempError,
    SPFTooManyDNSLookups,
    SPFTooManyVoidDNSLookups,
)
from checkspf.macros import MacroContext, expand_macros
from checkspf.parser import Mechanism, Modifier, parse_spf_record
from checkspf.utils import (
    DNSException,
    DNSExceptionNXDOMAIN,
    DNSExceptionTemporary,
    DNSRecordNotFound,
    DNSResolver,
    DomainValidationError,
    IPAddress,
    validate_domain,
)

"""Copyright 2019-2023 Sean Whalen

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

   https://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License."""

SPF_VERSION_TAG = "v=spf1"


class SPFMatch(TypedDict):
    domain: str
    mechanism: str


class CheckHostResult(TypedDict):
    domain: str
    result: Optional[str]
    cause: Optional[Exception]
    explanation: Optional[str]
    dns_lookups: int
    void_dns_lookups: int
    matches: list[SPFMatch]


def normalize_ip_address(ip_address: Union[str, IPAddress]) -> IPAddress:
    """
    Parses an IP address, folding IPv4-mapped IPv6 addresses to IPv4

    Raises:
        ValueError: The value is not an IP address
    """
    ip_address = ipaddress.ip_address(ip_address)
    if ip_address.version == 6 and ip_address.ipv4_mapped is not None:
        return ip_address.ipv4_mapped
    return ip_address


def split_sender(sender: Optional[str], domain: str) -> tuple[str, str, str]:
    """
    Splits a sender into the values used by the ``s``, ``l`` and ``o`` macros

    An empty sender is treated as ``postmaster@domain``, and a sender
    without a local-part gets the local-part ``postmaster``
    (RFC 7208 § 4.3).

    Args:
        sender (str): The MAIL FROM address
        domain (str): The domain being checked

    Returns:
        tuple: sender, local-part, sender domain
    """
    sender = (sender or "").strip().strip("<>")
    if sender == "":
        return f"postmaster@{domain}", "postmaster", domain
    local_part, _, sender_domain = sender.rpartition("@")
    if local_part == "":
        local_part = "postmaster"
    return f"{local_part}@{sender_domain}", local_part, sender_domain


class EvaluationContext(object):
    """The state shared by every step of one top-level check_host call"""

    def __init__(
        self,
        ip_address: IPAddress,
        sender: Optional[str],
        domain: str,
        *,
        helo_domain: Optional[str] = None,
        receiver: Optional[str] = None,
        deadline: Optional[float] = None,
        max_dns_lookups: int = MAX_DNS_LOOKUPS,
        max_void_dns_lookups: int = MAX_VOID_DNS_LOOKUPS,
    ):
        self.ip_address = ip_address
        self.sender, self.local_part, self.sender_domain = split_sender(
            sender, domain
        )
        self.helo_domain = helo_domain or "unknown"
        self.receiver = receiver or "unknown"
        self.deadline = deadline
        self.max_dns_lookups = max_dns_lookups
        self.max_void_dns_lookups = max_void_dns_lookups
        self.dns_lookups = 0
        self.void_dns_lookups = 0
        self.matches: list[SPFMatch] = []

    def count_dns_lookup(self) -> None:
        """
        Counts a mechanism or modifier that requires a DNS lookup

        Raises:
            :exc:`checkspf.errors.SPFTooManyDNSLookups`
        """
        if self.dns_lookups >= self.max_dns_lookups:
            raise SPFTooManyDNSLookups(
                f"Evaluating the SPF record requires more than "
                f"{self.max_dns_lookups}/{self.max_dns_lookups} maximum "
                "DNS lookups (RFC 7208 § 4.6.4)",
                dns_lookups=self.dns_lookups + 1,
            )
        self.dns_lookups += 1

    def count_void_dns_lookup(self, domain: str) -> None:
        """
        Counts a DNS lookup that returned no records

        Raises:
            :exc:`checkspf.errors.SPFTooManyVoidDNSLookups`
        """
        logging.debug(f"Void DNS lookup for {domain}")
        if self.void_dns_lookups >= self.max_void_dns_lookups:
            raise SPFTooManyVoidDNSLookups(
                f"Evaluating the SPF record requires more than "
                f"{self.max_void_dns_lookups}/{self.max_void_dns_lookups} "
                "maximum void DNS lookups (RFC 7208 § 4.6.4)",
                void_dns_lookups=self.void_dns_lookups + 1,
            )
        self.void_dns_lookups += 1

    def macro_context(self, domain: str, validated_domain: str = "unknown"):
        return MacroContext(
            ip=self.ip_address,
            sender=self.sender,
            local_part=self.local_part,
            sender_domain=self.sender_domain,
            domain=domain,
            helo_domain=self.helo_domain,
            validated_domain=validated_domain,
            receiver=self.receiver,
        )


@contextlib.contextmanager
def _spf_dns_errors(domain: str):
    """Translates DNS access errors to SPF results"""
    try:
        yield
    except DNSExceptionTemporary as e:
        raise SPFTempError(f"{domain}: {e}")
    except DNSException as e:
        raise SPFDNSError(f"{domain}: {e}")


def query_spf_record(
    domain: str,
    dns_resolver: DNSResolver,
    *,
    deadline: Optional[float] = None,
) -> str:
    """
    Queries DNS for an SPF record

    Args:
        domain (str): A domain name
        dns_resolver (DNSResolver): The resolver to query with
        deadline (float): A :func:`time.monotonic` deadline

    Returns:
        str: The lowercase SPF record, or an empty string if the domain has
             TXT records, but no SPF record

    Raises:
        :exc:`checkspf.errors.SPFRecordNotFound`
        :exc:`checkspf.errors.SPFTempError`
        :exc:`checkspf.errors.SPFDNSError`
        :exc:`checkspf.errors.MultipleSPFRTXTRecords`
        :exc:`checkspf.utils.DNSDeadlineExceeded`
    """
    logging.debug(f"Checking for a SPF record on {domain}")
    try:
        answers = dns_resolver.lookup_txt(domain, deadline=deadline)
    except DNSRecordNotFound as error:
        raise SPFRecordNotFound(error, domain)
    except DNSExceptionTemporary as error:
        raise SPFTempError(f"{domain}: {error}")
    except DNSException as error:
        raise SPFDNSError(f"{domain}: {error}")

    # https://datatracker.ietf.org/doc/html/rfc7208#section-4.5
    # A version section of "v=spf10" does not match and is discarded.
    spf_txt_records = []
    for record in answers:
        fields = record.split()
        if len(fields) > 0 and fields[0].lower() == SPF_VERSION_TAG:
            spf_txt_records.append(record)
    if len(spf_txt_records) > 1:
        raise MultipleSPFRTXTRecords("The domain has multiple SPF TXT records")
    if len(spf_txt_records) == 0:
        return ""
    return spf_txt_records[0].lower()


class SPFChecker(object):
    """Evaluates SPF policies as described in RFC 7208 § 4"""

    def __init__(
        self,
        dns_resolver: Optional[DNSResolver] = None,
        *,
        max_dns_lookups: int = MAX_DNS_LOOKUPS,
        max_void_dns_lookups: int = MAX_VOID_DNS_LOOKUPS,
        max_recursion_depth: int = MAX_RECURSION_DEPTH,
        nameservers: Optional[Sequence[str | Nameserver]] = None,
        resolver: Optional[dns.resolver.Resolver] = None,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
        cache: Optional[ExpiringDict] = None,
    ):
        """
        Args:
            dns_resolver (DNSResolver): The object that performs DNS lookups;
                                        built from the remaining DNS
                                        arguments when omitted
            max_dns_lookups (int): The DNS lookup limit
            max_void_dns_lookups (int): The void DNS lookup limit
            max_recursion_depth (int): How deeply include and redirect may
                                       nest
            nameservers (list): A list of nameservers to query
            resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                              requests
            timeout (float): number of seconds to wait for an answer from DNS
            timeout_retries (int): The number of times to reattempt a query
                                   after a timeout
            cache (ExpiringDict): Optional DNS answer cache
        """
        if dns_resolver is None:
            dns_resolver = DNSResolver(
                nameservers=nameservers,
                resolver=resolver,
                timeout=timeout,
                timeout_retries=timeout_retries,
                cache=cache,
            )
        self.dns_resolver = dns_resolver
        self.max_dns_lookups = max_dns_lookups
        self.max_void_dns_lookups = max_void_dns_lookups
        self.max_recursion_depth = max_recursion_depth
        self._matchers = {
            "all": self._match_all,
            "ip4": self._match_ip,
            "ip6": self._match_ip,
            "a": self._match_a,
            "mx": self._match_mx,
            "ptr": self._match_ptr,
            "exists": self._match_exists,
            "include": self._match_include,
        }

    def check_host(
        self,
        ip_address: Union[str, IPAddress],
        domain: str,
        sender: Optional[str] = None,
        *,
        helo_domain: Optional[str] = None,
        receiver: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> CheckHostResult:
        """
        Checks if a host is authorized to send mail for a domain

        Args:
            ip_address: The IP address of the SMTP client
            domain (str): The domain to check the SPF policy of
            sender (str): The MAIL FROM address
            helo_domain (str): The domain given in the HELO/EHLO command
            receiver (str): The name of the receiving host
            deadline (float): A :func:`time.monotonic` value after which no
                              more DNS lookups are made

        Returns:
            dict: A ``dict`` with the following keys:
                - ``domain`` - the checked domain
                - ``result`` - ``none``, ``neutral``, ``pass``, ``fail``,
                  ``softfail``, ``temperror``, ``permerror``, or ``None``
                  when the domain has no SPF record among its TXT records
                - ``cause`` - the exception that led to the result, if any
                - ``explanation`` - the expanded ``exp`` text of a ``fail``
                - ``dns_lookups`` - the number of DNS lookups counted
                - ``void_dns_lookups`` - the number of void DNS lookups
                - ``matches`` - the matched mechanisms, outermost first

        Raises:
            ValueError: ``ip_address`` is not an IP address
            :exc:`checkspf.utils.DNSDeadlineExceeded`
        """
        ip_address = normalize_ip_address(ip_address)
        try:
            domain = validate_domain(domain)
        except DomainValidationError as e:
            logging.debug(f"Not checking the invalid domain {domain}: {e}")
            return {
                "domain": domain,
                "result": "none",
                "cause": e,
                "explanation": None,
                "dns_lookups": 0,
                "void_dns_lookups": 0,
                "matches": [],
            }

        context = EvaluationContext(
            ip_address,
            sender,
            domain,
            helo_domain=helo_domain,
            receiver=receiver,
            deadline=deadline,
            max_dns_lookups=self.max_dns_lookups,
            max_void_dns_lookups=self.max_void_dns_lookups,
        )
        result = None
        cause = None
        explanation = None
        try:
            result, explanation = self._check_host(domain, context, (), True)
        except SPFPolicyAbsent as e:
            result, cause = None, e
        except SPFRecordNotFound as e:
            result, cause = "none", e
        except SPFTempError as e:
            result, cause = "temperror", e
        except SPFPermError as e:
            result, cause = "permerror", e
        logging.debug(f"SPF result for {ip_address} on {domain}: {result}")

        return {
            "domain": domain,
            "result": result,
            "cause": cause,
            "explanation": explanation,
            "dns_lookups": context.dns_lookups,
            "void_dns_lookups": context.void_dns_lookups,
            "matches": context.matches,
        }

    def _check_host(
        self,
        domain: str,
        context: EvaluationContext,
        chain: tuple[str, ...],
        explain: bool,
    ) -> tuple[str, Optional[str]]:
        if len(chain) > self.max_recursion_depth:
            raise SPFRecursionTooDeep(
                f"include and redirect nest more than {self.max_recursion_depth} "
                f"levels deep at {domain}"
            )
        chain = chain + (domain,)

        record = query_spf_record(
            domain, self.dns_resolver, deadline=context.deadline
        )
        if record == "":
            raise SPFPolicyAbsent("An SPF record does not exist.", domain)
        logging.debug(f"Found SPF record on {domain}: {record}")
        parsed_record = parse_spf_record(record, domain=domain)

        for mechanism in parsed_record.mechanisms:
            index = len(context.matches)
            matcher = self._matchers[mechanism.kind]
            if matcher(mechanism, domain, context, chain):
                logging.debug(f"{domain}: {mechanism} matched {context.ip_address}")
                context.matches.insert(
                    index, {"domain": domain, "mechanism": str(mechanism)}
                )
                explanation = None
                if mechanism.result == "fail" and explain and parsed_record.exp:
                    explanation = self._explain(parsed_record.exp, domain, context)
                return mechanism.result, explanation
            # Drop the trace of an include that did not match
            del context.matches[index:]

        redirect = parsed_record.redirect
        if redirect is None:
            return "neutral", None

        context.count_dns_lookup()
        target = self._target_domain(redirect.value, redirect.macro, domain, context)
        logging.debug(f"Following the SPF redirect from {domain} to {target}")
        if target in chain:
            raise SPFRedirectLoop(f"Redirect loop: {target}")
        try:
            return self._check_host(target, context, chain, explain)
        except SPFRecordNotFound as e:
            raise SPFPermError(
                f"{domain}: The redirect domain {target} does not have an SPF "
                f"record: {e}"
            )

    def _validated_domain(self, domain: str, context: EvaluationContext) -> str:
        """Returns the value of the ``p`` macro (RFC 7208 § 7.3)"""
        ip_address = context.ip_address
        try:
            names = self.dns_resolver.lookup_ptr(ip_address, deadline=context.deadline)
        except DNSException as e:
            logging.debug(f"Reverse DNS lookup for {ip_address} failed: {e}")
            return "unknown"
        validated = []
        for name in names[:MAX_PTR_NAMES]:
            try:
                addresses = self.dns_resolver.lookup_addresses(
                    name, version=ip_address.version, deadline=context.deadline
                )
            except DNSException:
                continue
            if ip_address in addresses:
                validated.append(name)
        for name in validated:
            if name == domain:
                return name
        for name in validated:
            if name.endswith(f".{domain}"):
                return name
        if len(validated) > 0:
            return validated[0]
        return "unknown"

    def _expand(
        self,
        value: str,
        domain: str,
        context: EvaluationContext,
        *,
        explanation: bool = False,
    ) -> str:
        validated_domain = "unknown"
        if "%{p" in value.lower():
            validated_domain = self._validated_domain(domain, context)
        return expand_macros(
            value,
            context.macro_context(domain, validated_domain),
            explanation=explanation,
        )

    def _target_domain(
        self, domain_spec: str, macro: bool, domain: str, context: EvaluationContext
    ) -> str:
        """Returns the domain a mechanism or modifier queries"""
        if domain_spec == "":
            return domain
        if not macro:
            return domain_spec
        expanded = self._expand(domain_spec, domain, context)
        try:
            return validate_domain(expanded)
        except DomainValidationError as e:
            raise SPFPermError(
                f"{domain}: {domain_spec} expands to an invalid domain name "
                f"{expanded}: {e}"
            )

    def _explain(
        self, exp: Modifier, domain: str, context: EvaluationContext
    ) -> Optional[str]:
        """Returns the expanded explanation string of a fail result, if any"""
        try:
            target = self._target_domain(exp.value, exp.macro, domain, context)
            records = self.dns_resolver.lookup_txt(target, deadline=context.deadline)
            if len(records) != 1:
                logging.debug(
                    f"Ignoring the exp modifier of {domain}: {target} has "
                    f"{len(records)} TXT records"
                )
                return None
            return self._expand(records[0], domain, context, explanation=True)
        except (SPFError, DNSException) as e:
            logging.debug(f"Ignoring the exp modifier of {domain}: {e}")
            return None

    def _lookup_addresses(
        self, name: str, context: EvaluationContext, version: Optional[int] = None
    ) -> list[IPAddress]:
        if version is None:
            version = context.ip_address.version
        with _spf_dns_errors(name):
            try:
                return self.dns_resolver.lookup_addresses(
                    name, version=version, deadline=context.deadline
                )
            except DNSExceptionNXDOMAIN:
                return []

    @staticmethod
    def _cidr_match(
        ip_address: IPAddress, addresses: list[IPAddress], mechanism: Mechanism
    ) -> bool:
        if ip_address.version == 4:
            length = mechanism.ip4_cidr_length
            if length is None:
                length = 32
        else:
            length = mechanism.ip6_cidr_length
            if length is None:
                length = 128
        for address in addresses:
            if address.version != ip_address.version:
                continue
            network = ipaddress.ip_network(f"{address}/{length}", strict=False)
            if ip_address in network:
                return True
        return False

    def _match_all(self, mechanism, domain, context, chain) -> bool:
        return True

    def _match_ip(self, mechanism, domain, context, chain) -> bool:
        network = mechanism.network
        if network.version != context.ip_address.version:
            return False
        return context.ip_address in network

    def _match_a(self, mechanism, domain, context, chain) -> bool:
        context.count_dns_lookup()
        target = self._target_domain(
            mechanism.domain_spec, mechanism.macro, domain, context
        )
        addresses = self._lookup_addresses(target, context)
        if len(addresses) == 0:
            context.count_void_dns_lookup(target)
        return self._cidr_match(context.ip_address, addresses, mechanism)

    def _match_mx(self, mechanism, domain, context, chain) -> bool:
        context.count_dns_lookup()
        target = self._target_domain(
            mechanism.domain_spec, mechanism.macro, domain, context
        )
        with _spf_dns_errors(target):
            try:
                hosts = self.dns_resolver.lookup_mx(target, deadline=context.deadline)
            except DNSExceptionNXDOMAIN:
                hosts = []
        if len(hosts) == 0:
            context.count_void_dns_lookup(target)
            return False
        if len(hosts) > MAX_MX_HOSTS:
            raise SPFPermError(
                f"{target} has {len(hosts)} MX hosts, but the mx mechanism "
                f"allows {MAX_MX_HOSTS} at most (RFC 7208 § 4.6.4)"
            )
        for host in hosts:
            context.count_dns_lookup()
            addresses = self._lookup_addresses(host, context)
            if len(addresses) == 0:
                context.count_void_dns_lookup(host)
            if self._cidr_match(context.ip_address, addresses, mechanism):
                return True
        return False

    def _match_ptr(self, mechanism, domain, context, chain) -> bool:
        context.count_dns_lookup()
        target = self._target_domain(
            mechanism.domain_spec, mechanism.macro, domain, context
        )
        ip_address = context.ip_address
        with _spf_dns_errors(target):
            try:
                names = self.dns_resolver.lookup_ptr(
                    ip_address, deadline=context.deadline
                )
            except DNSExceptionNXDOMAIN:
                names = []
        if len(names) == 0:
            context.count_void_dns_lookup(str(ip_address))
            return False
        for name in names[:MAX_PTR_NAMES]:
            if name != target and not name.endswith(f".{target}"):
                continue
            try:
                addresses = self.dns_resolver.lookup_addresses(
                    name, version=ip_address.version, deadline=context.deadline
                )
            except DNSException as e:
                # Names that fail to resolve are skipped (RFC 7208 § 5.5)
                logging.debug(f"Skipping the PTR name {name}: {e}")
                continue
            if ip_address in addresses:
                return True
        return False

    def _match_exists(self, mechanism, domain, context, chain) -> bool:
        context.count_dns_lookup()
        target = self._target_domain(
            mechanism.domain_spec, mechanism.macro, domain, context
        )
        # exists always uses an A query, even for IPv6 clients
        addresses = self._lookup_addresses(target, context, version=4)
        if len(addresses) == 0:
            context.count_void_dns_lookup(target)
            return False
        return True

    def _match_include(self, mechanism, domain, context, chain) -> bool:
        context.count_dns_lookup()
        target = self._target_domain(
            mechanism.domain_spec, mechanism.macro, domain, context
        )
        if target in chain:
            raise SPFIncludeLoop(f"Include loop: {' -> '.join(chain + (target,))}")
        try:
            result, _ = self._check_host(target, context, chain, False)
        except SPFRecordNotFound as e:
            raise SPFPermError(
                f"{domain}: The included domain {target} does not have an SPF "
                f"record: {e}"
            )
        return result == "pass"


def check_host(
    ip_address: Union[str, IPAddress],
    domain: str,
    sender: Optional[str] = None,
    *,
    helo_domain: Optional[str] = None,
    receiver: Optional[str] = None,
    deadline: Optional[float] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
    max_dns_lookups: int = MAX_DNS_LOOKUPS,
    max_void_dns_lookups: int = MAX_VOID_DNS_LOOKUPS,
    cache: Optional[ExpiringDict] = None,
) -> CheckHostResult:
    """
    Checks if a host is authorized to send mail for a domain

    Args:
        ip_address: The IP address of the SMTP client
        domain (str): The domain to check the SPF policy of
        sender (str): The MAIL FROM address
        helo_domain (str): The domain given in the HELO/EHLO command
        receiver (str): The name of the receiving host
        deadline (float): A :func:`time.monotonic` value after which no more
                          DNS lookups are made
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after
                               a timeout
        max_dns_lookups (int): The DNS lookup limit
        max_void_dns_lookups (int): The void DNS lookup limit
        cache (ExpiringDict): Optional DNS answer cache

    Returns:
        dict: See :meth:`SPFChecker.check_host`

    Raises:
        ValueError: ``ip_address`` is not an IP address
        :exc:`checkspf.utils.DNSDeadlineExceeded`
    """
    checker = SPFChecker(
        max_dns_lookups=max_dns_lookups,
        max_void_dns_lookups=max_void_dns_lookups,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
        cache=cache,
    )
    return checker.check_host(
        ip_address,
        domain,
        sender,
        helo_domain=helo_domain,
        receiver=receiver,
        deadline=deadline,
    )
