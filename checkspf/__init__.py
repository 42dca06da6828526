# -*- coding: utf-8 -*-

"""Evaluates Sender Policy Framework (SPF) policies (RFC 7208)"""

from __future__ import annotations

import json
import logging
from csv import DictWriter
from io import StringIO
from time import sleep
from typing import Optional, Union
from collections.abc import Sequence

import dns.resolver
from dns.nameserver import Nameserver
from expiringdict import ExpiringDict

import checkspf._constants
from checkspf._constants import (
    DEFAULT_DNS_TIMEOUT,
    DEFAULT_DNS_TIMEOUT_RETRIES,
    MAX_DNS_LOOKUPS,
    MAX_RECURSION_DEPTH,
    MAX_VOID_DNS_LOOKUPS,
)
from checkspf.errors import (
    MultipleSPFRTXTRecords,
    SPFDNSError,
    SPFDomainSpecTooLong,
    SPFError,
    SPFIncludeLoop,
    SPFPermError,
    SPFPolicyAbsent,
    SPFRecordNotFound,
    SPFRecursionTooDeep,
    SPFRedirectLoop,
    SPFSyntaxError,
    SPFTempError,
    SPFTooManyDNSLookups,
    SPFTooManyVoidDNSLookups,
)
from checkspf.macros import MacroContext, expand_macros
from checkspf.parser import Mechanism, Modifier, SPFRecord, parse_spf_record
from checkspf.spf import (
    CheckHostResult,
    SPFChecker,
    check_host,
    query_spf_record,
)
from checkspf.utils import (
    DNSDeadlineExceeded,
    DNSResolver,
    DomainValidationError,
    normalize_domain,
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


__version__ = checkspf._constants.__version__

__all__ = [
    "CheckHostResult",
    "DNSDeadlineExceeded",
    "DNSResolver",
    "DomainValidationError",
    "MacroContext",
    "Mechanism",
    "Modifier",
    "MultipleSPFRTXTRecords",
    "SPFChecker",
    "SPFDNSError",
    "SPFDomainSpecTooLong",
    "SPFError",
    "SPFIncludeLoop",
    "SPFPermError",
    "SPFPolicyAbsent",
    "SPFRecord",
    "SPFRecordNotFound",
    "SPFRecursionTooDeep",
    "SPFRedirectLoop",
    "SPFSyntaxError",
    "SPFTempError",
    "SPFTooManyDNSLookups",
    "SPFTooManyVoidDNSLookups",
    "check_domains",
    "check_host",
    "expand_macros",
    "output_to_file",
    "parse_spf_record",
    "query_spf_record",
    "results_to_csv",
    "results_to_json",
    "validate_domain",
]


def check_domains(
    ip_address: str,
    domains: list[str],
    sender: Optional[str] = None,
    *,
    helo_domain: Optional[str] = None,
    deadline: Optional[float] = None,
    nameservers: Optional[Sequence[str | Nameserver]] = None,
    resolver: Optional[dns.resolver.Resolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
    timeout_retries: int = DEFAULT_DNS_TIMEOUT_RETRIES,
    max_dns_lookups: int = MAX_DNS_LOOKUPS,
    max_void_dns_lookups: int = MAX_VOID_DNS_LOOKUPS,
    max_recursion_depth: int = MAX_RECURSION_DEPTH,
    cache: Optional[ExpiringDict] = None,
    dns_resolver: Optional[DNSResolver] = None,
    wait: float = 0.0,
) -> list[CheckHostResult]:
    """
    Checks if a host is authorized to send mail for each of the given domains

    Args:
        ip_address (str): The IP address of the SMTP client
        domains (list): A list of domains to check
        sender (str): The MAIL FROM address
        helo_domain (str): The domain given in the HELO/EHLO command
        deadline (float): A :func:`time.monotonic` value after which no more
                          DNS lookups are made
        nameservers (list): A list of nameservers to query
        resolver (dns.resolver.Resolver): A resolver object to use for DNS
                                          requests
        timeout (float): number of seconds to wait for an answer from DNS
        timeout_retries (int): The number of times to reattempt a query after a timeout
        max_dns_lookups (int): The DNS lookup limit
        max_void_dns_lookups (int): The void DNS lookup limit
        max_recursion_depth (int): How deeply include and redirect may nest
        cache (ExpiringDict): A DNS answer cache shared by all of the checks
        dns_resolver (DNSResolver): Overrides the resolver built from the DNS
                                    arguments
        wait (float): number of seconds to wait between processing domains

    Returns:
       list: A ``list`` of results; see :meth:`checkspf.SPFChecker.check_host`

    Raises:
        ValueError: ``ip_address`` is not an IP address
        :exc:`checkspf.DNSDeadlineExceeded`
    """
    domains = sorted(
        list(
            set(
                map(
                    lambda d: normalize_domain(d.rstrip(".\r\n").strip().split(",")[0]),
                    domains,
                )
            )
        )
    )
    while "" in domains:
        domains.remove("")
    checker = SPFChecker(
        dns_resolver,
        max_dns_lookups=max_dns_lookups,
        max_void_dns_lookups=max_void_dns_lookups,
        max_recursion_depth=max_recursion_depth,
        nameservers=nameservers,
        resolver=resolver,
        timeout=timeout,
        timeout_retries=timeout_retries,
        cache=cache,
    )
    results = []
    for domain in domains:
        logging.debug(f"Checking: {domain}")
        results.append(
            checker.check_host(
                ip_address,
                domain,
                sender,
                helo_domain=helo_domain,
                deadline=deadline,
            )
        )
        if wait > 0.0:
            logging.debug(f"Sleeping for {wait} seconds")
            sleep(wait)

    return results


def _serializable_result(result: CheckHostResult) -> dict:
    serializable = dict(result)
    cause = result["cause"]
    serializable["cause"] = None if cause is None else str(cause)
    serializable["error_type"] = None if cause is None else type(cause).__name__
    serializable["matches"] = [dict(match) for match in result["matches"]]
    return serializable


def results_to_json(
    results: Union[CheckHostResult, list[CheckHostResult]],
) -> str:
    """
    Converts a result or list of results to a JSON string

    Args:
        results (dict): A result or list of results

    Returns:
        str: Results in JSON format
    """
    if isinstance(results, dict):
        return json.dumps(_serializable_result(results), ensure_ascii=False, indent=2)
    results = [_serializable_result(result) for result in results]
    return json.dumps(results, ensure_ascii=False, indent=2)


def results_to_csv_rows(
    results: Union[CheckHostResult, list[CheckHostResult]],
) -> list[dict]:
    """
    Converts a result or list of results to a list of CSV row dictionaries

    Args:
        results (dict): A result or list of results

    Returns:
        list: A list of CSV row dictionaries
    """
    if type(results) is dict:
        results = [results]

    rows = []
    for result in results:
        row = _serializable_result(result)
        row["matches"] = "|".join(
            f"{match['domain']}:{match['mechanism']}" for match in result["matches"]
        )
        rows.append(row)

    return rows


def results_to_csv(
    results: Union[CheckHostResult, list[CheckHostResult]],
) -> str:
    """
    Converts a result or list of results to CSV

    Args:
        results (dict): A result or list of results

    Returns:
        str: A CSV of results
    """
    fields = [
        "domain",
        "result",
        "error_type",
        "cause",
        "explanation",
        "dns_lookups",
        "void_dns_lookups",
        "matches",
    ]
    output = StringIO(newline="\n")
    writer = DictWriter(output, fieldnames=fields)
    writer.writeheader()
    rows = results_to_csv_rows(results)
    writer.writerows(rows)
    output.flush()

    return output.getvalue()


def output_to_file(path: str, content: str):
    """
    Write given content to the given path

    Args:
        path (str): A file path
        content (str): JSON or CSV text
    """
    with open(path, "w", newline="\n", encoding="utf-8") as output_file:
        output_file.write(content)
