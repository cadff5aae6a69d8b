"""
Put response handling.

Each ResponseHandlerMode selects the put URL signature and how the endpoint's
answer is read:

- NOTHING: the body is ignored, counters are not tracked
- COUNTS: `?summary` returns `{"failed": n, "success": n}`
- ERRORS: `?details` adds the rejected datapoints, which are logged
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import ValidationError

from tsdb_shipper.logging_config import log_bad_metric
from tsdb_shipper.schemas import PutCounts, PutDetails, PutSummary, ResponseHandlerMode

logger = logging.getLogger(__name__)

GZIP_ERROR_MARKERS = ("JsonParseException", "Unable to parse the given JSON")


@dataclass(frozen=True)
class ResponseResult:
    """Outcome of reading one put response."""

    counts: Optional[PutCounts] = None
    disable_compression: bool = False

    @property
    def tracked(self) -> bool:
        return self.counts is not None


def contains_multibyte(content: str) -> bool:
    """True if any character is outside 7-bit ASCII."""
    return any(ord(c) > 127 for c in content)


def could_be_gzip_issue(status_code: int, content: str, compression_enabled: bool) -> bool:
    """
    Detect an endpoint that cannot read gzip request bodies.

    Such an endpoint parses the compressed bytes as JSON and fails on the
    first binary character, echoing it back in the error text.
    """
    return (
        compression_enabled
        and status_code == 400
        and any(marker in content for marker in GZIP_ERROR_MARKERS)
        and contains_multibyte(content)
    )


def _text(body: Union[str, bytes, None]) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


class ResponseHandler:
    """Reads a put response. The base handler ignores it."""

    mode = ResponseHandlerMode.NOTHING

    @property
    def put_signature(self) -> str:
        return self.mode.put_signature

    def process(
        self, status_code: int, body: Union[str, bytes, None], compression_enabled: bool = False
    ) -> ResponseResult:
        return ResponseResult()


class SummaryResponseHandler(ResponseHandler):
    mode = ResponseHandlerMode.COUNTS

    def process(
        self, status_code: int, body: Union[str, bytes, None], compression_enabled: bool = False
    ) -> ResponseResult:
        content = _text(body).strip()
        try:
            summary = PutSummary.model_validate_json(content)
        except ValidationError:
            logger.debug(f"Unparseable summary response (HTTP {status_code}): {content[:200]}")
            return ResponseResult(counts=PutCounts())
        return ResponseResult(counts=PutCounts(failed=summary.failed, success=summary.success))


class DetailedResponseHandler(ResponseHandler):
    mode = ResponseHandlerMode.ERRORS

    def process(
        self, status_code: int, body: Union[str, bytes, None], compression_enabled: bool = False
    ) -> ResponseResult:
        content = _text(body).strip()
        logger.debug(f"Put response (HTTP {status_code}): {content[:500]}")
        try:
            details = PutDetails.model_validate_json(content)
        except ValidationError:
            gzip_issue = could_be_gzip_issue(status_code, content, compression_enabled)
            logger.error(
                f"Failed to read put response: Server GZip Error:{gzip_issue} Content:\n{content[:2000]}"
            )
            if gzip_issue:
                logger.error("Endpoint rejected compressed content, disabling compression")
            return ResponseResult(counts=PutCounts(), disable_compression=gzip_issue)

        for rejected in details.errors:
            log_bad_metric(rejected.datapoint, rejected.error, status_code)
        if details.errors:
            logger.warning(f"Endpoint rejected {details.failed} datapoints ({len(details.errors)} reported)")
        return ResponseResult(counts=PutCounts(failed=details.failed, success=details.success))


_HANDLERS = {
    ResponseHandlerMode.NOTHING: ResponseHandler,
    ResponseHandlerMode.COUNTS: SummaryResponseHandler,
    ResponseHandlerMode.ERRORS: DetailedResponseHandler,
}


def get_handler(mode: Union[ResponseHandlerMode, str]) -> ResponseHandler:
    """Handler instance for a mode or mode name."""
    if isinstance(mode, str) and not isinstance(mode, ResponseHandlerMode):
        mode = ResponseHandlerMode.from_name(mode)
    return _HANDLERS[mode]()
