"""
Per-request data: the request being resolved and the outcome record the
pipeline fills in before it is serialized as the reply.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Method(Enum):
    """How the retrieved URL was obtained."""

    NONE = "none"
    URL_VALIDATION = "url validation"
    ORIGINAL = "original"
    REDIRECT = "redirect"
    CANONICAL = "canonical"
    OPENGRAPH = "opengraph"

    @property
    def rank(self) -> int:
        return _METHOD_RANK[self]

    def to_json(self) -> Optional[str]:
        if self is Method.NONE:
            return None
        return self.value


_METHOD_RANK = {
    Method.NONE: 0,
    Method.URL_VALIDATION: 1,
    Method.ORIGINAL: 1,
    Method.REDIRECT: 2,
    Method.CANONICAL: 3,
    Method.OPENGRAPH: 3,
}


@dataclass(frozen=True)
class ResolutionRequest:
    url: Optional[str]
    fetch: bool = True
    started: float = field(default_factory=time.perf_counter)


@dataclass
class ResolutionResult:
    url: Optional[str]
    started: float
    url_retrieved: Optional[str] = None
    method: Method = Method.NONE
    reason: Optional[str] = None
    error: bool = True
    get_attempt: bool = False
    canonical: bool = False
    tld: Optional[str] = None
    tld_retrieved: Optional[str] = None
    code: Optional[int] = None
    ctype: Optional[str] = None
    size: Optional[int] = None
    elapsed: Optional[float] = None

    @classmethod
    def for_request(cls, request: ResolutionRequest) -> "ResolutionResult":
        return cls(url=request.url, started=request.started)

    @property
    def finalized(self) -> bool:
        return self.elapsed is not None

    def advance(self, method: Method) -> None:
        """Move the method forward; it never goes back to an earlier stage."""
        if method.rank < self.method.rank:
            raise ValueError(f"cannot move method from {self.method.value} back to {method.value}")
        self.method = method

    def fail(self, reason: str) -> "ResolutionResult":
        self.reason = reason
        self.error = True
        return self

    def finish(self, reason: Optional[str]) -> "ResolutionResult":
        self.reason = reason
        return self

    def finalize(self) -> "ResolutionResult":
        if self.finalized:
            raise RuntimeError(f"result for {self.url!r} already finalized")
        self.elapsed = (time.perf_counter() - self.started) * 1000.0
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'url_retrieved': self.url_retrieved,
            'method': self.method.to_json(),
            'reason': self.reason,
            'error': self.error,
            'get_attempt': self.get_attempt,
            'canonical': self.canonical,
            'elapsed': self.elapsed,
            'tld': self.tld,
            'tld_retrieved': self.tld_retrieved,
            'code': self.code,
            'ctype': self.ctype,
            'size': self.size,
        }
