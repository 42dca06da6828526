# -*- coding: utf-8 -*-
"""SPF macro validation and expansion (RFC 7208 § 7)"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from typing import NamedTuple, Optional, Union
from urllib.parse import quote

import pyleri

from checkspf._constants import MAX_DOMAIN_SPEC_LENGTH, SYNTAX_ERROR_MARKER
from checkspf.errors import SPFDomainSpecTooLong, SPFSyntaxError

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

MACRO_LETTERS = "slodiphv"
EXPLANATION_MACRO_LETTERS = MACRO_LETTERS + "crt"
MACRO_DELIMITERS = ".-+,/_="

MACRO_EXPAND_REGEX_STRING = (
    r"%\{{[{letters}](?:[1-9][0-9]*)?r?[.\-+,/_=]*\}}"
)
MACRO_ESCAPE_REGEX_STRING = r"%[%_\-]"
MACRO_LITERAL_REGEX_STRING = r"[\x21-\x24\x26-\x7e]+"

MACRO_TOKEN_REGEX = re.compile(
    r"%(?:\{(?P<letter>[a-z])(?P<digits>[0-9]*)(?P<reverse>r?)"
    r"(?P<delimiters>[.\-+,/_=]*)\}|(?P<escape>[%_\-]))",
    re.IGNORECASE,
)

MACRO_ESCAPES = {"%": "%", "_": " ", "-": "%20"}

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class _MacroStringGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SPF domain-spec macro strings"""

    macro_expand = pyleri.Regex(
        MACRO_EXPAND_REGEX_STRING.format(letters=MACRO_LETTERS), re.IGNORECASE
    )
    macro_escape = pyleri.Regex(MACRO_ESCAPE_REGEX_STRING)
    macro_literal = pyleri.Regex(MACRO_LITERAL_REGEX_STRING)
    START = pyleri.Repeat(pyleri.Choice(macro_expand, macro_escape, macro_literal))


class _ExplainStringGrammar(pyleri.Grammar):
    """Defines Pyleri grammar for SPF explanation strings"""

    macro_expand = pyleri.Regex(
        MACRO_EXPAND_REGEX_STRING.format(letters=EXPLANATION_MACRO_LETTERS),
        re.IGNORECASE,
    )
    macro_escape = pyleri.Regex(MACRO_ESCAPE_REGEX_STRING)
    macro_literal = pyleri.Regex(MACRO_LITERAL_REGEX_STRING)
    START = pyleri.Repeat(pyleri.Choice(macro_expand, macro_escape, macro_literal))


_macro_string_checker = _MacroStringGrammar()
_explain_string_checker = _ExplainStringGrammar()


class MacroContext(NamedTuple):
    """The values SPF macro letters expand to"""

    ip: IPAddress
    sender: str
    local_part: str
    sender_domain: str
    domain: str
    helo_domain: str = "unknown"
    validated_domain: str = "unknown"
    receiver: str = "unknown"
    timestamp: Optional[int] = None


def has_macros(value: str) -> bool:
    """Returns ``True`` if the value contains a macro or escape"""
    return "%" in value


def validate_macro_string(
    value: str,
    *,
    explanation: bool = False,
    domain: Optional[str] = None,
    syntax_error_marker: str = SYNTAX_ERROR_MARKER,
) -> None:
    """
    Checks the macro syntax of a domain-spec or explanation string

    Args:
        value (str): The string to check
        explanation (bool): Allow the explanation-only letters ``c``, ``r``
                            and ``t``
        domain (str): The domain the value was published at, used in the
                      error message
        syntax_error_marker (str): The maker for pointing out syntax errors

    Raises:
        :exc:`checkspf.errors.SPFSyntaxError`
    """
    checker = _explain_string_checker if explanation else _macro_string_checker
    parsed_value = checker.parse(value)
    if parsed_value.is_valid:
        return
    pos = parsed_value.pos
    marked_value = value[:pos] + syntax_error_marker + value[pos:]
    prefix = f"{domain}: " if domain else ""
    raise SPFSyntaxError(
        f"{prefix}Invalid SPF macro syntax at position {pos} "
        f"(marked with {syntax_error_marker}) in value: {marked_value}"
    )


def _ip_to_macro_string(ip: IPAddress) -> str:
    if ip.version == 4:
        return str(ip)
    # IPv6 addresses are written as dot-separated nibbles
    return ".".join(ip.exploded.replace(":", ""))


def _letter_value(letter: str, context: MacroContext) -> str:
    if letter == "s":
        return context.sender
    if letter == "l":
        return context.local_part
    if letter == "o":
        return context.sender_domain
    if letter == "d":
        return context.domain
    if letter == "i":
        return _ip_to_macro_string(context.ip)
    if letter == "p":
        return context.validated_domain
    if letter == "v":
        return "in-addr" if context.ip.version == 4 else "ip6"
    if letter == "h":
        return context.helo_domain
    if letter == "c":
        return str(context.ip)
    if letter == "r":
        return context.receiver
    if letter == "t":
        if context.timestamp is None:
            return str(int(time.time()))
        return str(context.timestamp)
    raise SPFSyntaxError(f"Unknown SPF macro letter: {letter}")


def _transform(value: str, digits: str, reverse: bool, delimiters: str) -> str:
    if delimiters == "":
        delimiters = "."
    parts = re.split(f"[{re.escape(delimiters)}]", value)
    if reverse:
        parts.reverse()
    if digits:
        parts = parts[-int(digits) :]
    return ".".join(parts)


def expand_macros(
    value: str, context: MacroContext, *, explanation: bool = False
) -> str:
    """
    Expands the macros in a domain-spec or explanation string

    Args:
        value (str): The string to expand
        context (MacroContext): The values to expand macro letters to
        explanation (bool): The value is an explanation string

    Returns:
        str: The expanded string

    Raises:
        :exc:`checkspf.errors.SPFSyntaxError`
        :exc:`checkspf.errors.SPFDomainSpecTooLong`
    """
    validate_macro_string(value, explanation=explanation)

    def _replace(match: re.Match) -> str:
        if match.group("escape"):
            return MACRO_ESCAPES[match.group("escape")]
        letter = match.group("letter")
        expanded = _transform(
            _letter_value(letter.lower(), context),
            match.group("digits"),
            match.group("reverse") != "",
            match.group("delimiters"),
        )
        if letter.isupper():
            expanded = quote(expanded, safe="")
        return expanded

    expanded_value = MACRO_TOKEN_REGEX.sub(_replace, value)
    logging.debug(f"Expanded {value} to {expanded_value}")
    if not explanation and len(expanded_value) > MAX_DOMAIN_SPEC_LENGTH:
        raise SPFDomainSpecTooLong(
            f"{value} expands to more than {MAX_DOMAIN_SPEC_LENGTH} characters: "
            f"{expanded_value}"
        )
    return expanded_value
