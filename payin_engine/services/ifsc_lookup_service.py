"""IFSC branch lookup client used to fill in endpoint bank geography."""

from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Dict, Optional
from urllib import error, parse, request


logger = logging.getLogger(__name__)

_IFSC_PATTERN = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")


@dataclass(frozen=True)
class BranchLocation:
    """Bank branch details resolved from an IFSC code."""

    ifsc: str
    bank: Optional[str]
    branch: Optional[str]
    city: Optional[str]
    state: Optional[str]
    district: Optional[str] = None

    @classmethod
    def from_payload(cls, ifsc: str, payload: Dict[str, Any]) -> "BranchLocation":
        def _text(key: str) -> Optional[str]:
            value = str(payload.get(key) or "").strip()
            return value or None

        return cls(
            ifsc=ifsc,
            bank=_text("BANK"),
            branch=_text("BRANCH"),
            city=_text("CITY"),
            state=_text("STATE"),
            district=_text("DISTRICT"),
        )


class IfscLookupService:
    """Minimal Razorpay IFSC API client."""

    def __init__(self, enabled: bool, api_base_url: str, timeout_sec: int = 10) -> None:
        self._enabled = bool(enabled)
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout_sec = max(1, int(timeout_sec))

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @staticmethod
    def normalize(ifsc: str) -> str:
        """Upper-case and validate an IFSC code.

        Raises:
            ValueError: If the code is not a well-formed IFSC.
        """
        code = (ifsc or "").strip().upper()
        if not _IFSC_PATTERN.match(code):
            raise ValueError("Invalid IFSC code: {0}".format(ifsc))
        return code

    def lookup(self, ifsc: str) -> Optional[BranchLocation]:
        """Resolve an IFSC code to its branch. Returns ``None`` for unknown codes.

        Raises:
            RuntimeError: If lookups are disabled or the API cannot be reached.
        """
        if not self._enabled:
            raise RuntimeError("IFSC lookup is disabled. Check ifsc_api.enabled.")
        code = self.normalize(ifsc)
        url = "{0}/{1}".format(self._api_base_url, parse.quote(code))
        req = request.Request(
            url=url,
            method="GET",
            headers={"Accept": "application/json", "User-Agent": "PayinEngine/1.0"},
        )
        try:
            with request.urlopen(req, timeout=self._timeout_sec) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            if exc.code == 404:
                logger.info("IFSC not found ifsc=%s", code)
                return None
            logger.exception("IFSC lookup failed ifsc=%s status=%s", code, exc.code)
            raise RuntimeError("IFSC API error status={0}".format(exc.code))
        except error.URLError as exc:
            logger.exception("IFSC lookup network error ifsc=%s", code)
            raise RuntimeError("IFSC network error: {0}".format(exc))

        try:
            payload = json.loads(body) if body else {}
        except ValueError as exc:
            raise RuntimeError("IFSC API returned invalid JSON for {0}".format(code)) from exc
        if not isinstance(payload, dict) or not payload:
            return None
        location = BranchLocation.from_payload(code, payload)
        logger.info("IFSC resolved ifsc=%s city=%s state=%s", code, location.city, location.state)
        return location
