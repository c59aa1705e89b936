"""
Usage source adapter.

Runs the external ``ccusage`` tool, parses its JSON report and turns it into
validated TokenUsageRecord objects. Every failure surfaces as a
ValidationError: usage data is never guessed or partially accepted.
"""

import json
import logging
import math
import re
import subprocess
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, List, Optional, Sequence

from token_pet.storage.models import TokenUsageRecord

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ("npx", "ccusage@latest", "daily", "--json")
DEFAULT_MODEL_NAME = "claude-sonnet-4-20250514"

REQUIRED_FIELDS = ("date", "inputTokens", "outputTokens", "totalTokens", "totalCost")
OPTIONAL_NUMERIC_FIELDS = ("cacheCreationTokens", "cacheReadTokens")

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Informational stderr lines printed by package managers while fetching the tool
BENIGN_STDERR_PATTERNS = (
    re.compile(r"^npx:\s+(installed|cached)\s+\d+\s+in\s+[\d.]+s?$"),
    re.compile(r"^npm\s+(notice|warn|WARN)\b.*$"),
)


class ValidationError(Exception):
    """Raised when usage data from the external tool is malformed."""
    def __init__(self, message: str, data: Any = None):
        super().__init__(message)
        self.data = data


@dataclass(frozen=True)
class CommandOutput:
    """Captured output of one tool invocation."""
    stdout: str
    stderr: str
    returncode: int = 0


CommandRunner = Callable[[Sequence[str]], CommandOutput]


def run_command(command: Sequence[str]) -> CommandOutput:
    """Run the usage tool and capture its output."""
    completed = subprocess.run(
        list(command),
        capture_output=True,
        text=True,
        check=False,
    )
    return CommandOutput(
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        returncode=completed.returncode,
    )


def is_valid_date(value: Any) -> bool:
    """Check for a real calendar day in YYYY-MM-DD form."""
    if not isinstance(value, str) or not _DATE_PATTERN.match(value):
        return False
    try:
        return date.fromisoformat(value).isoformat() == value
    except ValueError:
        return False


def _is_non_negative_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


def _is_benign_stderr(stderr: str) -> bool:
    lines = [line.strip() for line in stderr.strip().splitlines() if line.strip()]
    return all(
        any(pattern.match(line) for pattern in BENIGN_STDERR_PATTERNS)
        for line in lines
    )


def _round_cost(cost: float) -> float:
    return float(Decimal(str(cost)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))


class UsageReader:
    """Reads daily token usage from the ccusage CLI."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        command: Sequence[str] = DEFAULT_COMMAND,
    ):
        self._runner = runner or run_command
        self.command = tuple(command)

    def build_command(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[str]:
        """Build the tool invocation. Dates go in as YYYY-MM-DD, out as YYYYMMDD."""
        command = list(self.command)
        if start_date:
            command += ["--since", start_date.replace("-", "")]
        if end_date:
            command += ["--until", end_date.replace("-", "")]
        return command

    def read_usage(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> List[TokenUsageRecord]:
        """Read and validate usage between two optional dates (inclusive).

        Args:
            start_date: Optional first day, YYYY-MM-DD
            end_date: Optional last day, YYYY-MM-DD

        Returns:
            One record per day reported by the tool

        Raises:
            ValidationError: On tool failure, unexpected diagnostics or bad data
        """
        command = self.build_command(start_date, end_date)
        logger.debug("Running usage tool: %s", " ".join(command))

        try:
            output = self._runner(command)
        except OSError as e:
            raise ValidationError(f"Failed to run usage tool: {e}") from e

        if output.returncode != 0:
            raise ValidationError(
                f"Usage tool exited with code {output.returncode}: {output.stderr.strip()}",
                {"stderr": output.stderr},
            )

        if output.stderr.strip() and not _is_benign_stderr(output.stderr):
            raise ValidationError(f"Usage tool stderr: {output.stderr.strip()}", {"stderr": output.stderr})

        raw_records = self._parse_json_output(output.stdout)
        records = [self._to_record(item, index) for index, item in enumerate(raw_records)]
        logger.info("Read %d usage records", len(records))
        return records

    def _parse_json_output(self, stdout: str) -> List[Any]:
        """Extract the list of daily entries from the tool's JSON output."""
        text = stdout.strip()
        if not text:
            return []

        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Failed to parse usage JSON output: {e}", {"stdout": text})

        if isinstance(parsed, dict) and isinstance(parsed.get("daily"), list):
            return parsed["daily"]
        # Older tool versions print a bare array
        if isinstance(parsed, list):
            return parsed
        raise ValidationError("Usage output format is not recognized", parsed)

    def _to_record(self, item: Any, index: int) -> TokenUsageRecord:
        """Validate one daily entry and normalize it into a record."""
        if not isinstance(item, dict):
            raise ValidationError(f"Record at index {index} is not an object", item)

        missing = [name for name in REQUIRED_FIELDS if name not in item]
        if missing:
            raise ValidationError(
                f"Record at index {index} missing required fields: {', '.join(missing)}", item
            )

        usage_date = item["date"].strip() if isinstance(item["date"], str) else item["date"]
        if not is_valid_date(usage_date):
            raise ValidationError(f"Record at index {index} has invalid date format: {item['date']}", item)

        for name in REQUIRED_FIELDS[1:]:
            if not _is_non_negative_number(item[name]):
                raise ValidationError(f"Record at index {index} has invalid {name}: {item[name]}", item)

        for name in OPTIONAL_NUMERIC_FIELDS:
            value = item.get(name)
            if value is not None and not _is_non_negative_number(value):
                raise ValidationError(f"Record at index {index} has invalid {name}: {value}", item)

        cache_tokens = (item.get("cacheCreationTokens") or 0) + (item.get("cacheReadTokens") or 0)

        models = item.get("modelsUsed")
        model_name = DEFAULT_MODEL_NAME
        if isinstance(models, list) and models and isinstance(models[0], str) and models[0].strip():
            model_name = models[0].strip()

        return TokenUsageRecord(
            usage_date=usage_date,
            input_tokens=int(item["inputTokens"]),
            output_tokens=int(item["outputTokens"]),
            cache_tokens=int(cache_tokens),
            total_tokens=int(item["totalTokens"]),
            cost_usd=_round_cost(item["totalCost"]),
            model_name=model_name,
        )
