"""CSV ingestion: parse an uploaded contact list into validated candidate records."""

import csv
import hashlib
import io
import logging
import re

from email_validator import EmailNotValidError, validate_email

from snowball.core.config import Settings, settings
from snowball.core.exceptions import CSVValidationError
from snowball.schemas.snowball import CandidateRecord, IngestionResult, RowError

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("email",)
OPTIONAL_COLUMNS = ("name", "tags", "company", "subscribed")

MAX_TEXT_LENGTH = 100
MAX_TAGS = 10
CANDIDATE_DELIMITERS = ",;\t|"
TRUTHY_VALUES = {"true", "yes", "1", "y", "on"}


def normalize_header(header: str) -> str:
    """Lowercase, trim and snake-case a header name."""
    return re.sub(r"\s+", "_", (header or "").strip().lower())


def normalize_email(value: str | None) -> str:
    """Trim and lowercase an email address."""
    return (value or "").strip().lower()


def is_valid_email(address: str) -> bool:
    """Syntax-only RFC check; no DNS lookups."""
    try:
        validate_email(address, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    tags = [tag.strip() for tag in re.split(r"[,;|]", raw)]
    return [tag[:MAX_TEXT_LENGTH] for tag in tags if tag][:MAX_TAGS]


def parse_boolean(raw: str | None) -> bool | None:
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in TRUTHY_VALUES


def _truncate(raw: str | None) -> str | None:
    value = (raw or "").strip()
    return value[:MAX_TEXT_LENGTH] or None


def content_hash_for(addresses: list[str]) -> str:
    """Digest of the normalized candidate set; independent of row order."""
    digest = hashlib.sha256()
    for address in sorted(set(addresses)):
        digest.update(address.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


class CSVIngestionService:
    """Validates CSV uploads and turns rows into ``CandidateRecord`` objects.

    Structural problems raise ``CSVValidationError`` so the upload is refused
    before an event exists. Row-level problems are returned as ``RowError``
    entries and never abort the file.
    """

    def __init__(self, config: Settings = settings) -> None:
        self.max_file_size = config.snowball_max_file_size_bytes
        self.max_rows = config.snowball_max_csv_rows

    def ingest(self, content: bytes) -> IngestionResult:
        """Parse raw CSV bytes into candidates, row errors and a content hash."""
        if len(content) > self.max_file_size:
            raise CSVValidationError(
                f"File size {len(content)} exceeds maximum allowed size of {self.max_file_size} bytes",
                code="file_too_large",
            )

        text = self._decode(content)
        if not text.strip():
            raise CSVValidationError("CSV file is empty", code="empty_file")

        reader = csv.reader(io.StringIO(text), delimiter=self._detect_delimiter(text))
        try:
            rows = [row for row in reader if any(cell.strip() for cell in row)]
        except csv.Error as exc:
            raise CSVValidationError(f"CSV parsing failed: {exc}", code="malformed_csv") from exc

        if not rows:
            raise CSVValidationError("CSV file is empty", code="empty_file")

        headers = [normalize_header(h) for h in rows[0]]
        missing = [col for col in REQUIRED_COLUMNS if col not in headers]
        if missing:
            raise CSVValidationError(
                f"Missing required columns: {', '.join(missing)}",
                code="missing_columns",
            )

        data_rows = rows[1:]
        if not data_rows:
            raise CSVValidationError("CSV file has a header but no rows", code="empty_file")
        if len(data_rows) > self.max_rows:
            raise CSVValidationError(
                f"CSV contains {len(data_rows)} rows, exceeding maximum of {self.max_rows}",
                code="too_many_rows",
            )

        records, errors = self._validate_rows(headers, data_rows)

        if errors:
            logger.info(
                "CSV ingestion: %d candidates, %d row errors out of %d rows",
                len(records),
                len(errors),
                len(data_rows),
            )

        return IngestionResult(
            records=records,
            errors=errors,
            content_hash=content_hash_for([r.email for r in records]),
            checksum=hashlib.sha256(content).hexdigest(),
            total_rows=len(data_rows),
            headers=headers,
        )

    def _validate_rows(
        self, headers: list[str], data_rows: list[list[str]]
    ) -> tuple[list[CandidateRecord], list[RowError]]:
        records: list[CandidateRecord] = []
        errors: list[RowError] = []
        seen: set[str] = set()

        for index, row in enumerate(data_rows, start=1):
            values = {
                header: (row[i] if i < len(row) else "")
                for i, header in enumerate(headers)
                if header
            }
            email = normalize_email(values.get("email"))

            if not email:
                errors.append(RowError(row=index, outcome="rejected", reason="missing_email"))
                continue
            if not is_valid_email(email):
                errors.append(
                    RowError(row=index, email=email, outcome="rejected", reason="invalid_format")
                )
                continue
            if email in seen:
                errors.append(
                    RowError(row=index, email=email, outcome="duplicate", reason="duplicate_in_file")
                )
                continue
            seen.add(email)

            records.append(
                CandidateRecord(
                    email=email,
                    row_index=index,
                    name=_truncate(values.get("name")),
                    company=_truncate(values.get("company")),
                    tags=parse_tags(values.get("tags")),
                    subscribed=parse_boolean(values.get("subscribed")),
                )
            )

        return records, errors

    @staticmethod
    def _decode(content: bytes) -> str:
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise CSVValidationError("CSV file must be UTF-8 encoded", code="bad_encoding") from exc

    @staticmethod
    def _detect_delimiter(text: str) -> str:
        header_line = text.lstrip().splitlines()[0]
        try:
            return csv.Sniffer().sniff(header_line, delimiters=CANDIDATE_DELIMITERS).delimiter
        except csv.Error:
            return ","
