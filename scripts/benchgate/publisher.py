"""Report publication to an HTTP webhook.

Publication is a side channel: the gate's exit status never depends on it, so
failures are logged as warnings and swallowed here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import requests

from .logger import logger

if TYPE_CHECKING:
    from .report import ComparisonReport

# Runner output can be very long; keep only the tail in the payload
MAX_OUTPUT_CHARS = 20_000


class ReportPublisher:
    """Posts a JSON summary of a comparison report to a webhook URL."""

    def __init__(
        self, url: str, timeout: int = 30, session: requests.Session | None = None
    ) -> None:
        """Initialise publisher with target URL and session."""
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json"}

    def build_payload(
        self, report: ComparisonReport, group: str, metric: str = "Instructions"
    ) -> dict[str, Any]:
        """Assemble the JSON body for a report.

        Returns:
            The payload dictionary.
        """
        return {
            "group": group,
            "label": report.label,
            "baseline": report.baseline,
            "candidate": report.candidate,
            "passed": report.passed,
            "exit_code": report.exit_code,
            "policy": report.verdict.policy if report.verdict else None,
            "reasons": report.verdict.reasons if report.verdict else [],
            "benchmarks": len(report.benchmarks),
            "summary": report.to_markdown(metric),
            "output_tail": report.output[-MAX_OUTPUT_CHARS:],
        }

    def publish(self, report: ComparisonReport, group: str, metric: str = "Instructions") -> bool:
        """Send the report.

        Returns:
            True if the webhook accepted the report, False otherwise.
        """
        payload = self.build_payload(report, group, metric)
        logger.debug("[API] POST %s - Publishing comparison report", self.url)
        try:
            response = self.session.post(
                self.url, json=payload, headers=self.headers, timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning("⚠️ Report publication failed: %s", e)
            return False

        if not response.ok:
            logger.warning(
                "⚠️ Report publication rejected: %s - %s",
                response.status_code,
                response.text[:200],
            )
            return False

        logger.info("📤 Comparison report published")
        return True
