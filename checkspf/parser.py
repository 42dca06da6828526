# -*- coding: utf-8 -*-
"""Sender Policy Framework (SPF) record parsing"""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Callable, NamedTuple, Optional, Union

from checkspf._constants import SYNTAX_ERROR_MARKER
from checkspf.errors import SPFSyntaxError
from checkspf.macros import has_macros, validate_macro_string
from checkspf.utils import DomainValidationError, validate_domain

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

QUALIFIERS = {"+": "pass", "-": "fail", "~": "softfail", "?": "neutral"}

TERM_REGEX = re.compile(r"[^ \t\r\n\f\v]+")
MODIFIER_REGEX = re.compile(r"^([a-z][a-z0-9_.\-]*)=(.*)$", re.IGNORECASE)
CIDR_LENGTH_REGEX = re.compile(r"^(?:0|[1-9][0-9]{0,2})$")
DUAL_CIDR_REGEX = re.compile(r"^(?:/(?P<ip4>[0-9]+))?(?:/{1,2}(?P<ip6>[0-9]+))?$")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class Mechanism(NamedTuple):
    """A parsed SPF mechanism"""

    qualifier: str
    kind: str
    network: Optional[IPNetwork] = None
    domain_spec: str = ""
    ip4_cidr_length: Optional[int] = None
    ip6_cidr_length: Optional[int] = None
    macro: bool = False

    @property
    def result(self) -> str:
        """The result returned when the mechanism matches"""
        return QUALIFIERS[self.qualifier]

    def __str__(self):
        qualifier = "" if self.qualifier == "+" else self.qualifier
        term = f"{qualifier}{self.kind}"
        if self.network is not None:
            term += f":{self.network}"
        if self.domain_spec:
            term += f":{self.domain_spec}"
        if self.ip4_cidr_length is not None:
            term += f"/{self.ip4_cidr_length}"
        if self.ip6_cidr_length is not None:
            term += f"//{self.ip6_cidr_length}"
        return term


class Modifier(NamedTuple):
    """A parsed SPF modifier"""

    name: str
    value: str
    macro: bool = False

    def __str__(self):
        return f"{self.name}={self.value}"


class SPFRecord(NamedTuple):
    """A parsed SPF record"""

    mechanisms: tuple[Mechanism, ...]
    redirect: Optional[Modifier] = None
    exp: Optional[Modifier] = None
    unknown: tuple[Modifier, ...] = ()

    def __str__(self):
        terms = [SPF_VERSION_TAG] + [str(mechanism) for mechanism in self.mechanisms]
        for modifier in (self.redirect, self.exp):
            if modifier is not None:
                terms.append(str(modifier))
        terms += [str(modifier) for modifier in self.unknown]
        return " ".join(terms)


class _Term(NamedTuple):
    text: str
    pos: int


def _validate_domain_spec(domain_spec: str, kind: str) -> tuple[str, bool]:
    """Returns the domain-spec to store and whether it contains macros"""
    if domain_spec == "":
        raise SPFSyntaxError(f"{kind} requires a domain-spec")
    if has_macros(domain_spec):
        validate_macro_string(domain_spec)
        return domain_spec, True
    try:
        return validate_domain(domain_spec), False
    except DomainValidationError as e:
        raise SPFSyntaxError(f"Invalid domain-spec {domain_spec} in {kind}: {e}")


def _parse_cidr_length(value: str, maximum: int, term: str) -> int:
    if not CIDR_LENGTH_REGEX.match(value) or int(value) > maximum:
        raise SPFSyntaxError(f"Invalid CIDR length {value} in {term}")
    return int(value)


def _split_domain_spec(value: str) -> tuple[str, str]:
    """Splits a domain-spec from a trailing dual-cidr-length"""
    in_macro = False
    for i, ch in enumerate(value):
        if in_macro:
            if ch == "}":
                in_macro = False
        elif ch == "{" and i > 0 and value[i - 1] == "%":
            in_macro = True
        elif ch == "/":
            return value[:i], value[i:]
    return value, ""


def _parse_dual_cidr(cidr: str, term: str) -> tuple[Optional[int], Optional[int]]:
    if cidr == "":
        return None, None
    match = DUAL_CIDR_REGEX.match(cidr)
    if match is None:
        raise SPFSyntaxError(f"Invalid dual CIDR length {cidr} in {term}")
    # A single leading slash always introduces the IPv4 length
    ip4, ip6 = match.group("ip4"), match.group("ip6")
    ip4_length = None if ip4 is None else _parse_cidr_length(ip4, 32, term)
    ip6_length = None if ip6 is None else _parse_cidr_length(ip6, 128, term)
    return ip4_length, ip6_length


def _parse_ip(qualifier: str, term: str, version: int) -> Mechanism:
    kind = f"ip{version}"
    value = term[len(kind) + 1 :]
    parts = value.split("/")
    if len(parts) > 2:
        raise SPFSyntaxError(f"Invalid {kind} value: {value}")
    address = parts[0]
    maximum = 32 if version == 4 else 128
    length = maximum
    if len(parts) == 2:
        length = _parse_cidr_length(parts[1], maximum, term)
    try:
        ip_address = ipaddress.ip_address(address)
    except ValueError:
        raise SPFSyntaxError(f"{address} is not a valid IP address in {term}")
    if ip_address.version != version:
        raise SPFSyntaxError(
            f"{address} is not an IPv{version} address and cannot be used in {kind}"
        )
    network = ipaddress.ip_network(f"{ip_address}/{length}", strict=False)
    return Mechanism(qualifier, kind, network=network)


def _parse_all(qualifier: str, term: str) -> Mechanism:
    return Mechanism(qualifier, "all")


def _parse_ip4(qualifier: str, term: str) -> Mechanism:
    return _parse_ip(qualifier, term, 4)


def _parse_ip6(qualifier: str, term: str) -> Mechanism:
    return _parse_ip(qualifier, term, 6)


def _parse_address_mechanism(qualifier: str, term: str, kind: str) -> Mechanism:
    value = term[len(kind) :]
    domain_spec, cidr = _split_domain_spec(value)
    macro = False
    if domain_spec.startswith(":"):
        domain_spec, macro = _validate_domain_spec(domain_spec[1:], kind)
    elif domain_spec != "":
        raise SPFSyntaxError(f"Unknown mechanism {term}")
    ip4_length, ip6_length = _parse_dual_cidr(cidr, term)
    return Mechanism(
        qualifier,
        kind,
        domain_spec=domain_spec,
        ip4_cidr_length=ip4_length,
        ip6_cidr_length=ip6_length,
        macro=macro,
    )


def _parse_a(qualifier: str, term: str) -> Mechanism:
    return _parse_address_mechanism(qualifier, term, "a")


def _parse_mx(qualifier: str, term: str) -> Mechanism:
    return _parse_address_mechanism(qualifier, term, "mx")


def _parse_domain_mechanism(qualifier: str, term: str, kind: str) -> Mechanism:
    domain_spec, macro = _validate_domain_spec(term[len(kind) + 1 :], kind)
    return Mechanism(qualifier, kind, domain_spec=domain_spec, macro=macro)


def _parse_ptr(qualifier: str, term: str) -> Mechanism:
    if term.lower() == "ptr":
        return Mechanism(qualifier, "ptr")
    return _parse_domain_mechanism(qualifier, term, "ptr")


def _parse_exists(qualifier: str, term: str) -> Mechanism:
    return _parse_domain_mechanism(qualifier, term, "exists")


def _parse_include(qualifier: str, term: str) -> Mechanism:
    return _parse_domain_mechanism(qualifier, term, "include")


def _name_is(name: str, *separators: str) -> Callable[[str], bool]:
    def predicate(term: str) -> bool:
        term = term.lower()
        if term == name:
            return True
        return any(term.startswith(f"{name}{sep}") for sep in separators)

    return predicate


MECHANISM_PARSERS: tuple[
    tuple[Callable[[str], bool], Callable[[str, str], Mechanism]], ...
] = (
    (_name_is("all"), _parse_all),
    (_name_is("ip4", ":"), _parse_ip4),
    (_name_is("ip6", ":"), _parse_ip6),
    (_name_is("a", ":", "/"), _parse_a),
    (_name_is("mx", ":", "/"), _parse_mx),
    (_name_is("ptr", ":"), _parse_ptr),
    (_name_is("exists", ":"), _parse_exists),
    (_name_is("include", ":"), _parse_include),
)


def parse_mechanism(term: str) -> Mechanism:
    """
    Parses a single SPF mechanism

    Args:
        term (str): A mechanism, with an optional qualifier

    Returns:
        Mechanism: The parsed mechanism

    Raises:
        :exc:`checkspf.errors.SPFSyntaxError`
    """
    qualifier = "+"
    if term[0] in QUALIFIERS:
        qualifier = term[0]
        term = term[1:]
    for predicate, constructor in MECHANISM_PARSERS:
        if predicate(term):
            return constructor(qualifier, term)
    raise SPFSyntaxError(f"Unknown mechanism {term}")


def _parse_modifier(name: str, value: str) -> Modifier:
    name = name.lower()
    if value == "":
        raise SPFSyntaxError(f"The {name} modifier requires a value")
    if name in ["redirect", "exp"]:
        value, macro = _validate_domain_spec(value, name)
        return Modifier(name, value, macro)
    if has_macros(value):
        validate_macro_string(value)
        return Modifier(name, value, True)
    return Modifier(name, value)


def _tokenize(record: str) -> list[_Term]:
    return [
        _Term(match.group(), match.start()) for match in TERM_REGEX.finditer(record)
    ]


def _marked_error(
    record: str,
    pos: int,
    message: str,
    domain: Optional[str],
    syntax_error_marker: str,
) -> SPFSyntaxError:
    marked_record = record[:pos] + syntax_error_marker + record[pos:]
    prefix = f"{domain}: " if domain else ""
    return SPFSyntaxError(
        f"{prefix}{message} at position {pos} "
        f"(marked with {syntax_error_marker}) in: {marked_record}"
    )


def parse_spf_record(
    record: str,
    *,
    domain: Optional[str] = None,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> SPFRecord:
    """
    Parses an SPF record

    Parsing is pure: the same text always produces an equal
    :class:`SPFRecord`, and no DNS lookups are made.

    Args:
        record (str): An SPF record
        domain (str): The domain that the SPF record was found on, used in
                      error messages
        syntax_error_marker (str): The maker for pointing out syntax errors

    Returns:
        SPFRecord: The parsed record

    Raises:
        :exc:`checkspf.errors.SPFSyntaxError`
    """
    logging.debug(f"Parsing the SPF record: {record}")
    terms = _tokenize(record)
    if len(terms) == 0 or terms[0].text.lower() != SPF_VERSION_TAG:
        pos = terms[0].pos if terms else 0
        raise _marked_error(
            record,
            pos,
            f"Expected {SPF_VERSION_TAG}",
            domain,
            syntax_error_marker,
        )
    terms = terms[1:]
    if len(terms) == 0:
        raise _marked_error(
            record,
            len(record.rstrip()),
            "Expected at least one mechanism or modifier",
            domain,
            syntax_error_marker,
        )

    mechanisms = []
    modifiers: dict[str, Modifier] = {}
    unknown = []
    for term in terms:
        try:
            modifier_match = MODIFIER_REGEX.match(term.text)
            if modifier_match:
                modifier = _parse_modifier(*modifier_match.groups())
                if modifier.name in ["redirect", "exp"]:
                    if modifier.name in modifiers:
                        raise SPFSyntaxError(
                            f"Multiple {modifier.name} modifiers are not allowed"
                        )
                    modifiers[modifier.name] = modifier
                else:
                    unknown.append(modifier)
                continue
            mechanisms.append(parse_mechanism(term.text))
        except SPFSyntaxError as e:
            raise _marked_error(
                record, term.pos, str(e), domain, syntax_error_marker
            )

    return SPFRecord(
        mechanisms=tuple(mechanisms),
        redirect=modifiers.get("redirect"),
        exp=modifiers.get("exp"),
        unknown=tuple(unknown),
    )
