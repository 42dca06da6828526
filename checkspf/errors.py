# -*- coding: utf-8 -*-
"""Exceptions raised while evaluating Sender Policy Framework (SPF) records"""

from __future__ import annotations

from typing import Optional, Union

import dns.exception

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


class SPFError(Exception):
    """Raised when a fatal SPF error occurs"""

    def __init__(self, msg: str, data: Optional[dict] = None):
        """
        Args:
            msg (str): The error message
            data (dict): A dictionary of data to include in the output
        """
        self.data = data
        Exception.__init__(self, msg)


class SPFRecordNotFound(SPFError):
    """Raised when an SPF record could not be found (``none``)"""

    def __init__(self, error: Union[Exception, str], domain: str):
        if isinstance(error, dns.exception.Timeout) and "timeout" in error.kwargs:
            error.kwargs["timeout"] = round(error.kwargs["timeout"], 1)
        self.error = error
        self.domain = domain
        SPFError.__init__(self, str(error))

    def __str__(self):
        return str(self.error)


class SPFPolicyAbsent(SPFRecordNotFound):
    """Raised when a domain has TXT records, but none of them is an SPF record"""


class SPFTempError(SPFError):
    """
    Raised when a transient (generally DNS) error occurs during the check
    (``temperror``, RFC 7208 § 2.6.6)
    """


class SPFPermError(SPFError):
    """
    Raised when the published records cannot be correctly interpreted
    (``permerror``, RFC 7208 § 2.6.7)
    """


class SPFSyntaxError(SPFPermError):
    """Raised when an SPF syntax error is found"""


class SPFDomainSpecTooLong(SPFPermError):
    """Raised when a domain-spec expands to more than 253 characters"""


class MultipleSPFRTXTRecords(SPFPermError):
    """Raised when multiple TXT spf1 records are found"""


class SPFDNSError(SPFPermError):
    """Raised when a DNS lookup fails for a reason that is not temporary"""


class SPFTooManyDNSLookups(SPFPermError):
    """Raised when an SPF record requires too many DNS lookups (10 max)"""

    def __init__(self, *args, **kwargs):
        data = {"dns_lookups": kwargs["dns_lookups"]}
        SPFPermError.__init__(self, args[0], data=data)


class SPFTooManyVoidDNSLookups(SPFPermError):
    """Raised when an SPF record requires too many void DNS lookups (2 max)"""

    def __init__(self, *args, **kwargs):
        data = {"void_dns_lookups": kwargs["void_dns_lookups"]}
        SPFPermError.__init__(self, args[0], data=data)


class SPFRedirectLoop(SPFPermError):
    """Raised when an SPF redirect loop is detected"""


class SPFIncludeLoop(SPFPermError):
    """Raised when an SPF include loop is detected"""


class SPFRecursionTooDeep(SPFPermError):
    """Raised when include and redirect modifiers nest too deeply"""
