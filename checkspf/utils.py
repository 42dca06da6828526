# -*- coding: utf-8 -*-
"""DNS utility functions"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
import unicodedata
from typing import Optional, Union
from collections.abc import Sequence

import dns.exception
import dns.resolver
import dns.reversename
from dns.nameserver import Nameserver
import idna
from expiringdict import ExpiringDict

from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    DNS_CACHE_MAX_AGE_SECONDS,
    DNS_CACHE_MAX_LEN,
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

ZERO_WIDTH_RE = re.compile(r"[​-‍﻿]")  # includes ZWSP, ZWNJ, ZWJ, BOM
ASCII_LABEL_REGEX = re.compile(r"^[a-z0-9_](?:[a-z0-9_\-]*[a-z0-9_])?$")
# Full stops that UTS #46 maps to "."
LABEL_SEPARATOR_REGEX = re.compile(r"[\u3002\uff0e\uff61]")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class DomainValidationError(ValueError):
    """Raised when a domain name fails validation"""


class SingleLabelError(DomainValidationError):
    """Raised when a domain name has fewer than two labels"""


class EmptyLabelError(DomainValidationError):
    """Raised when a domain name has an empty label"""


class LabelTooLongError(DomainValidationError):
    """Raised when a domain name label exceeds 63 octets"""


class DomainTooLongError(DomainValidationError):
    """Raised when a domain name exceeds 255 octets"""


class IDNAConversionError(DomainValidationError):
    """Raised when a domain name cannot be converted to its ASCII form"""


class DNSException(Exception):
    """Raised when a general DNS error occurs"""

    def __init__(self, error):
        if isinstance(error, dns.exception.Timeout) and "timeout" in error.kwargs:
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        Exception.__init__(self, str(error))


class DNSRecordNotFound(DNSException):
    """Raised when the queried name or record type does not exist"""


class DNSExceptionNXDOMAIN(DNSRecordNotFound):
    """Raised when a NXDOMAIN DNS error (RCODE:3) occurs"""


class DNSExceptionNoAnswer(DNSRecordNotFound):
    """Raised when the name exists, but has no records of the requested type"""


class DNSExceptionTemporary(DNSException):
    """Raised when a DNS query times out or the nameservers fail (SERVFAIL)"""


class DNSDeadlineExceeded(TimeoutError):
    """Raised when the caller's deadline passes before DNS lookups complete"""


def normalize_domain(domain: str) -> str:
    """
    Normalize an input domain by removing zero-width characters and lowering it

    Args:
        domain (str): A domain or subdomain

    Returns:
        str: A normalized domain
    """
    # 1. Normalize Unicode (NFC form for consistency)
    domain = unicodedata.normalize("NFC", domain)
    # 2. Remove zero-width and similar hidden chars
    domain = ZERO_WIDTH_RE.sub("", domain)
    # 3. Lowercase for case-insensitivity (domains are case-insensitive)
    return domain.lower()


def _to_ascii_label(label: str) -> str:
    if label.isascii():
        if not ASCII_LABEL_REGEX.match(label):
            raise IDNAConversionError(f"Invalid domain name label: {label}")
        return label
    try:
        return idna.encode(label, uts46=True).decode("ascii")
    except (idna.IDNAError, UnicodeError) as error:
        raise IDNAConversionError(
            f"IDNA conversion of the label {label} failed: {error}"
        )


def validate_domain(domain: str) -> str:
    """
    Normalizes and validates a domain name as required by RFC 7208 § 4.3

    Args:
        domain (str): A domain name

    Returns:
        str: The lowercase, ASCII-compatible form of the domain

    Raises:
        :exc:`checkspf.utils.SingleLabelError`
        :exc:`checkspf.utils.EmptyLabelError`
        :exc:`checkspf.utils.LabelTooLongError`
        :exc:`checkspf.utils.DomainTooLongError`
        :exc:`checkspf.utils.IDNAConversionError`
    """
    domain = normalize_domain(domain.strip())
    domain = LABEL_SEPARATOR_REGEX.sub(".", domain)
    # Domains are implicitly absolute
    if domain.endswith("."):
        domain = domain[:-1]
    labels = [_to_ascii_label(label) if label else label for label in domain.split(".")]
    ascii_domain = ".".join(labels)

    if len(ascii_domain) > 255:
        raise DomainTooLongError(f"The domain {ascii_domain} exceeds 255 octets")
    if len(labels) < 2:
        raise SingleLabelError(f"The domain {domain} must have at least two labels")
    for label in labels:
        if len(label) == 0:
            raise EmptyLabelError(f"The domain {domain} has an empty label")
        if len(label) > 63:
            raise LabelTooLongError(
                f"The domain {domain} has a label that exceeds 63 octets"
            )

    return ascii_domain


class DNSResolver(object):
    """
    Performs the DNS lookups needed to evaluate SPF records, and translates
    dnspython errors into the :exc:`checkspf.utils.DNSException` hierarchy
    """

    def __init__(
        self,
        *,
        nameservers: Optional[Sequence[str | Nameserver]] = None,
        resolver: Optional[dns.resolver.Resolver] = None,
        timeout: float = DEFAULT_DNS_TIMEOUT,
        timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
        cache: Optional[ExpiringDict] = None,
    ):
        """
        Args:
            nameservers (list): A list of nameservers to query
            resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                              requests
            timeout (float): number of seconds to wait for an answer from DNS
            timeout_retries (int): The number of times to reattempt a query
                                   after a timeout
            cache (ExpiringDict): Optional answer cache shared between checks
        """
        timeout = float(timeout)
        if not resolver:
            resolver = dns.resolver.Resolver()
            if nameservers is not None:
                resolver.nameservers = nameservers
            resolver.timeout = timeout
            resolver.lifetime = timeout
        self.resolver = resolver
        self.timeout = timeout
        self.timeout_retries = timeout_retries
        self.cache = cache

    def __repr__(self):
        return f"<{self.__class__.__name__} timeout={self.timeout} >"

    @staticmethod
    def new_cache() -> ExpiringDict:
        """Returns an empty answer cache with the configured size and age limits"""
        return ExpiringDict(
            max_len=DNS_CACHE_MAX_LEN, max_age_seconds=DNS_CACHE_MAX_AGE_SECONDS
        )

    def _lifetime(self, domain: str, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DNSDeadlineExceeded(f"The deadline passed before querying {domain}")
        return min(self.timeout, remaining)

    def query(
        self, domain: str, record_type: str, *, deadline: Optional[float] = None
    ) -> dns.resolver.Answer:
        """
        Queries DNS

        Args:
            domain (str): The domain or subdomain to query about
            record_type (str): The record type to query for
            deadline (float): A :func:`time.monotonic` value after which no
                              more queries are made

        Returns:
            dns.resolver.Answer: The answer

        Raises:
            :exc:`checkspf.utils.DNSExceptionNXDOMAIN`
            :exc:`checkspf.utils.DNSExceptionNoAnswer`
            :exc:`checkspf.utils.DNSExceptionTemporary`
            :exc:`checkspf.utils.DNSException`
            :exc:`checkspf.utils.DNSDeadlineExceeded`
        """
        attempt = 0
        while True:
            lifetime = self._lifetime(domain, deadline)
            try:
                return self.resolver.resolve(domain, record_type, lifetime=lifetime)
            except dns.resolver.NXDOMAIN:
                raise DNSExceptionNXDOMAIN(f"The domain {domain} does not exist.")
            except dns.resolver.NoAnswer:
                raise DNSExceptionNoAnswer(
                    f"The domain {domain} does not have any {record_type} records."
                )
            except dns.exception.Timeout as error:
                if deadline is not None and time.monotonic() >= deadline:
                    raise DNSDeadlineExceeded(
                        f"The deadline passed while querying {domain}"
                    )
                attempt += 1
                if attempt > self.timeout_retries:
                    raise DNSExceptionTemporary(error)
                logging.debug(
                    f"Retrying the {record_type} query for {domain} "
                    f"(attempt {attempt} of {self.timeout_retries})"
                )
            except dns.resolver.NoNameservers as error:
                raise DNSExceptionTemporary(error)
            except dns.exception.DNSException as error:
                raise DNSException(error)

    def _cached(self, key: str) -> Optional[list]:
        if self.cache is None:
            return None
        records = self.cache.get(key)
        if isinstance(records, list):
            return list(records)
        return None

    def _store(self, key: str, records: list) -> None:
        if self.cache is not None:
            self.cache[key] = list(records)

    def lookup_txt(self, domain: str, *, deadline: Optional[float] = None) -> list[str]:
        """
        Queries DNS for TXT records

        Args:
            domain (str): A domain name
            deadline (float): A :func:`time.monotonic` deadline

        Returns:
            list: A list of TXT records, with the strings of each record joined

        Raises:
            :exc:`checkspf.utils.DNSRecordNotFound`
            :exc:`checkspf.utils.DNSExceptionTemporary`
            :exc:`checkspf.utils.DNSException`
        """
        cache_key = f"{domain}_TXT"
        records = self._cached(cache_key)
        if records is not None:
            return records
        logging.debug(f"Getting TXT records for {domain}")
        answers = self.query(domain, "TXT", deadline=deadline)
        records = []
        for answer in answers:
            records.append(b"".join(answer.strings).decode("utf-8", errors="replace"))
        self._store(cache_key, records)
        return records

    def lookup_addresses(
        self,
        domain: str,
        *,
        version: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> list[IPAddress]:
        """
        Queries DNS for A and/or AAAA records

        Args:
            domain (str): A domain name
            version (int): ``4`` for A records only, ``6`` for AAAA records
                           only, or ``None`` for both
            deadline (float): A :func:`time.monotonic` deadline

        Returns:
            list: A list of :mod:`ipaddress` addresses

        Raises:
            :exc:`checkspf.utils.DNSExceptionNXDOMAIN`
            :exc:`checkspf.utils.DNSExceptionTemporary`
            :exc:`checkspf.utils.DNSException`
        """
        if version == 4:
            qtypes = ["A"]
        elif version == 6:
            qtypes = ["AAAA"]
        else:
            qtypes = ["A", "AAAA"]
        addresses = []
        for qt in qtypes:
            cache_key = f"{domain}_{qt}"
            records = self._cached(cache_key)
            if records is None:
                logging.debug(f"Getting {qt} records for {domain}")
                try:
                    answers = self.query(domain, qt, deadline=deadline)
                    records = [ipaddress.ip_address(a.address) for a in answers]
                except DNSExceptionNoAnswer:
                    # Sometimes a domain will only have A or AAAA records, but not both
                    records = []
                self._store(cache_key, records)
            addresses += records
        return addresses

    def lookup_mx(self, domain: str, *, deadline: Optional[float] = None) -> list[str]:
        """
        Queries DNS for a list of Mail Exchange hosts

        Args:
            domain (str): A domain name
            deadline (float): A :func:`time.monotonic` deadline

        Returns:
            list: MX hostnames sorted by preference

        Raises:
            :exc:`checkspf.utils.DNSExceptionNXDOMAIN`
            :exc:`checkspf.utils.DNSExceptionTemporary`
            :exc:`checkspf.utils.DNSException`
        """
        cache_key = f"{domain}_MX"
        hostnames = self._cached(cache_key)
        if hostnames is not None:
            return hostnames
        logging.debug(f"Checking for MX records on {domain}")
        hosts = []
        try:
            answers = self.query(domain, "MX", deadline=deadline)
        except DNSExceptionNoAnswer:
            answers = []
        for answer in answers:
            hostname = str(answer.exchange).rstrip(".").strip().lower()
            if hostname == "":
                # RFC 7505 "No Service" MX record
                logging.debug('"No Service" MX record found')
                continue
            hosts.append((int(answer.preference), hostname))
        hostnames = [hostname for _, hostname in sorted(hosts)]
        self._store(cache_key, hostnames)
        return hostnames

    def lookup_ptr(
        self, ip_address: IPAddress, *, deadline: Optional[float] = None
    ) -> list[str]:
        """
        Queries for an IP addresses reverse DNS hostname(s)

        Args:
            ip_address: An IPv4 or IPv6 address
            deadline (float): A :func:`time.monotonic` deadline

        Returns:
            list: A list of reverse DNS hostnames

        Raises:
            :exc:`checkspf.utils.DNSExceptionNXDOMAIN`
            :exc:`checkspf.utils.DNSExceptionTemporary`
            :exc:`checkspf.utils.DNSException`
        """
        name = str(dns.reversename.from_address(str(ip_address)))
        cache_key = f"{name}_PTR"
        hostnames = self._cached(cache_key)
        if hostnames is not None:
            return hostnames
        logging.debug(f"Getting PTR records for {ip_address}")
        try:
            answers = self.query(name, "PTR", deadline=deadline)
        except DNSExceptionNoAnswer:
            answers = []
        hostnames = [str(answer.target).rstrip(".").lower() for answer in answers]
        self._store(cache_key, hostnames)
        return hostnames
