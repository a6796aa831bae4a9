"""Requirements document to plain-text conversion."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

from ms_audit.agent.errors import DocumentConversionError
from ms_audit.config import DocumentSettings

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = frozenset({".txt", ".md", ".markdown", ".rst", ".csv", ".json"})


class DocumentConverter(Protocol):
    """Converts a document into a temporary text file owned by the caller."""

    def convert(self, path: Path) -> Path: ...


class PdfTextConverter:
    """Convert PDFs with ``pdftotext`` and copy text documents as they are."""

    def __init__(self, settings: DocumentSettings | None = None) -> None:
        self.settings = settings or DocumentSettings()

    def convert(self, path: Path) -> Path:
        if not path.is_file():
            raise DocumentConversionError(f"Document not found: {path}")

        suffix = path.suffix.lower()
        if suffix not in TEXT_SUFFIXES and suffix != ".pdf":
            raise DocumentConversionError(f"Unsupported document type: {path.name}")

        target = _temp_text_path(path)
        try:
            if suffix == ".pdf":
                self._pdf_to_text(path, target)
            else:
                shutil.copyfile(path, target)
        except DocumentConversionError:
            target.unlink(missing_ok=True)
            raise
        except OSError as error:
            target.unlink(missing_ok=True)
            raise DocumentConversionError(f"Failed to read {path.name}: {error}") from error

        logger.debug("Converted %s to %s", path, target)
        return target

    def _pdf_to_text(self, source: Path, target: Path) -> None:
        args = [self.settings.pdftotext_command, "-layout", str(source), str(target)]
        try:
            completed = subprocess.run(  # noqa: S603
                args,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self.settings.conversion_timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise DocumentConversionError(
                f"PDF converter not found: {self.settings.pdftotext_command}",
            ) from error
        except subprocess.TimeoutExpired as error:
            raise DocumentConversionError(
                f"PDF conversion of {source.name} timed out "
                f"after {self.settings.conversion_timeout_seconds:g}s",
            ) from error

        if completed.returncode != 0:
            logger.warning(
                "pdftotext failed for %s (exit %s): %s",
                source,
                completed.returncode,
                completed.stderr.decode("utf-8", errors="replace").strip(),
            )
            raise DocumentConversionError(
                f"PDF conversion of {source.name} failed with exit code {completed.returncode}",
            )


def _temp_text_path(source: Path) -> Path:
    fd, name = tempfile.mkstemp(prefix=f"{source.stem}-", suffix=".txt")
    os.close(fd)
    return Path(name)
