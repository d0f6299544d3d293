#!/usr/bin/env python3
"""
Forest File Loader
Decodes user-uploaded forest-change files (CSV, Excel, JSON, TXT) into plain
row mappings with consistent error handling.
"""

import io
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import pandas as pd

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".csv", ".xlsx", ".xls", ".json", ".txt")


class ForestDataError(Exception):
    """Base exception for forest data ingestion errors."""

    pass


class UnsupportedFormatError(ForestDataError):
    """Raised when the file extension is not one of the supported formats."""

    pass


class FileAccessError(ForestDataError):
    """Raised when a file cannot be read or decoded."""

    pass


class EmptyDatasetError(ForestDataError):
    """Raised when no usable rows remain after decoding or cleaning."""

    pass


UNSUPPORTED_FORMAT_MESSAGE = (
    "Unsupported file format. Please upload a CSV, Excel, JSON, or TXT file."
)
NO_DATA_MESSAGE = "No data found in the file or invalid format."


def _frame_to_rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Convert a decoded frame into row dicts with missing cells as None."""
    if df.empty:
        return []
    # Headers are trimmed and lowercased before column resolution
    df = df.rename(columns=lambda c: str(c).strip().lower())
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict(orient="records")


def _detect_delimiter(first_line: str) -> str:
    if "\t" in first_line:
        return "\t"
    if ";" in first_line:
        return ";"
    return ","


class ForestFileLoader:
    """
    Reads a forest-change file and returns loosely-typed rows.

    The loader only knows about file formats. Column naming, value parsing
    and validation are left to the column resolver and row normalizer.
    """

    def __init__(self, file_path: Union[str, Path]) -> None:
        """
        Initialize the loader with a file path.

        Args:
            file_path: Path to the file to decode

        Raises:
            UnsupportedFormatError: If the extension is not supported
            FileNotFoundError: If the specified file does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        self.suffix = self.file_path.suffix.lower()
        if self.suffix not in SUPPORTED_SUFFIXES:
            raise UnsupportedFormatError(UNSUPPORTED_FORMAT_MESSAGE)
        if not self.file_path.exists():
            raise FileNotFoundError(f"Data file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")

    def read_rows(self) -> List[Dict[str, Any]]:
        """
        Decode the file into a list of row mappings.

        Returns:
            List[Dict[str, Any]]: One dict per data row. May be empty.

        Raises:
            FileAccessError: If the file cannot be decoded
        """
        readers = {
            ".csv": self._read_csv,
            ".xlsx": self._read_excel,
            ".xls": self._read_excel,
            ".json": self._read_json,
            ".txt": self._read_txt,
        }
        rows = readers[self.suffix]()
        logger.info(f"Decoded {len(rows)} rows from {self.file_path.name}")
        return rows

    def _read_csv(self) -> List[Dict[str, Any]]:
        try:
            df = pd.read_csv(self.file_path, skip_blank_lines=True)
        except pd.errors.EmptyDataError:
            return []
        except Exception as e:
            raise FileAccessError(f"Error reading CSV file: {e}") from e
        return _frame_to_rows(df)

    def _read_excel(self) -> List[Dict[str, Any]]:
        try:
            # First sheet only
            df = pd.read_excel(self.file_path, sheet_name=0)
        except Exception as e:
            raise FileAccessError(f"Error reading Excel file: {e}") from e
        return _frame_to_rows(df)

    def _read_json(self) -> List[Dict[str, Any]]:
        try:
            payload = json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FileAccessError("Invalid JSON format.") from e
        if not isinstance(payload, list):
            logger.warning("JSON root is not an array - no rows decoded")
            return []
        return [item for item in payload if isinstance(item, dict)]

    def _read_txt(self) -> List[Dict[str, Any]]:
        try:
            text = self.file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise FileAccessError("Invalid text file format.") from e

        first_line = next((ln for ln in text.splitlines() if ln.strip()), None)
        if first_line is None:
            return []
        delimiter = _detect_delimiter(first_line)
        try:
            df = pd.read_csv(
                io.StringIO(text),
                sep=delimiter,
                dtype=str,
                skip_blank_lines=True,
                skipinitialspace=True,
            )
        except pd.errors.EmptyDataError:
            return []
        except Exception as e:
            raise FileAccessError(f"Error reading text file: {e}") from e
        return _frame_to_rows(df)

    def get_file_info(self) -> Dict[str, Any]:
        """
        Get basic information about the file and its decoded columns.

        Returns:
            Dict[str, Any]: Dictionary containing file information
        """
        rows = self.read_rows()
        columns: List[str] = []
        for row in rows:
            for key in row:
                if key not in columns:
                    columns.append(key)
        return {
            "file_path": str(self.file_path),
            "file_size": self.file_path.stat().st_size,
            "format": self.suffix.lstrip("."),
            "total_rows": len(rows),
            "columns": columns,
        }

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        pass
