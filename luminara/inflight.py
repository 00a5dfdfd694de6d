"""Phase 2: timeout guarding, body encoding and the network call itself."""

import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from .config import HedgingConfig, coerce_block
from .drivers.base import BaseDriver, DriverResponse
from .errors import ConfigError, normalize_error
from .features.hedging import HedgingAttempt, HedgingCoordinator
from .models import FormBody, HedgingInfo, MultipartBody, PreparedRequest
from .timeout import TimeoutGuard, guard_timeout

logger = logging.getLogger("luminara.inflight")

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
JSON_CONTENT_TYPE = "application/json"


def _has_header(headers: Dict[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def encode_body(method: str, headers: Dict[str, str], body: Any) -> Tuple[Dict[str, str], Any]:
    """
    Apply the body encoding rules for the wire.

    Strings, bytes and form containers pass through untouched; any other
    value is serialized as JSON with a Content-Type unless one is set.
    Methods other than POST, PUT and PATCH never carry a body.

    Returns:
        The (possibly extended) headers and the body to send
    """
    if body is None:
        return headers, None
    if method.upper() not in BODY_METHODS:
        logger.debug("Dropping body of %s request", method)
        return headers, None
    if isinstance(body, (str, bytes, bytearray, FormBody, MultipartBody)):
        return headers, body

    encoded = json.dumps(body, separators=(",", ":"), default=str)
    if not _has_header(headers, "content-type"):
        headers = {**headers, "Content-Type": JSON_CONTENT_TYPE}
    return headers, encoded


@dataclass
class InFlightResult:
    """Raw response of one attempt plus the timeout guard still covering it."""

    response: DriverResponse
    guard: TimeoutGuard
    hedging: Optional[HedgingInfo] = None

    def dispose(self) -> None:
        self.guard.dispose()


class InFlightHandler:
    """Sends one attempt through the driver, hedged when eligible."""

    def __init__(self, driver: BaseDriver, rand: Callable[[], float] = random.random):
        self.driver = driver
        self._rand = rand

    def hedging_config(self, prepared: PreparedRequest) -> Optional[HedgingConfig]:
        """Effective hedging block, or None when this request is not hedged."""
        try:
            config = coerce_block(HedgingConfig, prepared.options.hedging)
            if config is None or not config.enabled or config.policy is None:
                return None
            config.validate()
        except ConfigError as exc:
            logger.warning("Invalid hedging configuration, sending a single request: %s", exc)
            return None
        if not config.allows(prepared.method):
            return None
        return config

    async def execute(self, prepared: PreparedRequest, attempt: int = 1) -> InFlightResult:
        """
        Perform one attempt.

        The returned guard must be disposed once the body has been consumed.

        Raises:
            LuminaraError: Normalized failure of the attempt
        """
        guard = guard_timeout(prepared.cancellation_token, prepared.timeout_ms)
        headers, body = encode_body(prepared.method, prepared.headers, prepared.body)
        request = prepared.copy(headers=headers, body=body, cancellation_token=guard.token)

        try:
            hedging = self.hedging_config(request)
            if hedging is not None:
                async def send(req: PreparedRequest, hedge: HedgingAttempt) -> DriverResponse:
                    return await self.driver.request(req, attempt=attempt)

                response, info = await HedgingCoordinator(hedging, send, self._rand).execute(request)
                return InFlightResult(response=response, guard=guard, hedging=info)

            response = await self.driver.request(request, attempt=attempt)
            return InFlightResult(response=response, guard=guard)
        except Exception as exc:
            guard.dispose()
            raise normalize_error(exc, request=request, attempt=attempt, token=guard.token)
