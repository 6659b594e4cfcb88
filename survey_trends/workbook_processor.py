#!/usr/bin/env python3
"""
Workbook Processor Utility
Reads named sheets from survey workbooks (.xls / .xlsx) into pandas DataFrames
with a small exception hierarchy so callers can tell a missing sheet from an
unreadable file.
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd

SPREADSHEET_SUFFIXES = (".xls", ".xlsx", ".xlsm")


class WorkbookProcessingError(Exception):
    """Base exception for workbook processing errors."""

    pass


class SheetNotFoundError(WorkbookProcessingError):
    """Raised when a requested sheet is not present in the workbook."""

    pass


class FileAccessError(WorkbookProcessingError):
    """Raised when the workbook cannot be opened or read."""

    pass


class WorkbookProcessor:
    """
    Reads sheets from a single survey workbook.

    The underlying pandas.ExcelFile handle is opened lazily and released on
    close(); use the processor as a context manager so the handle is always
    released:

        with WorkbookProcessor(path) as wb:
            df = wb.read_sheet("General Survey")
    """

    def __init__(self, file_path: Union[str, Path]) -> None:
        """
        Args:
            file_path: Path to the workbook.

        Raises:
            FileNotFoundError: If the workbook does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"Workbook not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")
        if self.file_path.suffix.lower() not in SPREADSHEET_SUFFIXES:
            print(
                f"Warning: File does not have a spreadsheet extension: {self.file_path}"
            )
        self._excel: Optional[pd.ExcelFile] = None

    def _open(self) -> pd.ExcelFile:
        if self._excel is None:
            try:
                self._excel = pd.ExcelFile(self.file_path)
            except Exception as e:
                raise FileAccessError(f"Error opening workbook {self.file_path}: {e}")
        return self._excel

    def sheet_names(self) -> List[str]:
        """Return the sheet names in workbook order."""
        return list(self._open().sheet_names)

    def has_sheet(self, sheet_name: str) -> bool:
        return sheet_name in self.sheet_names()

    def read_sheet(self, sheet_name: str, source_column: Optional[str] = None) -> pd.DataFrame:
        """
        Read one sheet with its first row as header.

        Args:
            sheet_name: Name of the sheet to read
            source_column: When given, add a column of that name holding the
                workbook file name so rows from several workbooks stay traceable

        Returns:
            pd.DataFrame: Sheet contents (empty frame for an empty sheet)

        Raises:
            SheetNotFoundError: If the sheet is absent
            FileAccessError: If the sheet cannot be parsed
        """
        names = self.sheet_names()
        if sheet_name not in names:
            raise SheetNotFoundError(
                f"Sheet '{sheet_name}' not found in {self.file_path.name}; available: {names}"
            )
        try:
            df = pd.read_excel(self._open(), sheet_name=sheet_name, header=0)
        except Exception as e:
            raise FileAccessError(
                f"Error reading sheet '{sheet_name}' from {self.file_path.name}: {e}"
            )
        # Fully blank rows are spreadsheet padding, not observations
        df = df.dropna(how="all").reset_index(drop=True)
        if source_column:
            df.insert(0, source_column, self.file_path.name)
        return df

    def get_file_info(self) -> Dict[str, Any]:
        """
        Summarize the workbook: size and per-sheet row/column counts.

        Raises:
            FileAccessError: If the workbook cannot be read
        """
        try:
            sheets = {}
            for name in self.sheet_names():
                sample = pd.read_excel(self._open(), sheet_name=name, header=0)
                sheets[name] = {
                    "rows": int(len(sample)),
                    "columns": [str(c) for c in sample.columns],
                }
            return {
                "file_path": str(self.file_path),
                "file_size": self.file_path.stat().st_size,
                "sheets": sheets,
            }
        except WorkbookProcessingError:
            raise
        except Exception as e:
            raise FileAccessError(f"Error getting workbook info: {e}")

    def close(self) -> None:
        if self._excel is not None:
            self._excel.close()
            self._excel = None

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


def main() -> None:
    """Command-line interface for inspecting survey workbooks."""
    parser = argparse.ArgumentParser(
        description="Inspect sheets of survey workbooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python workbook_processor.py AliceLake2013.xls
  python workbook_processor.py AliceLake2013.xls --sheet "General Survey" --head 10
        """,
    )
    parser.add_argument("file_path", help="Path to the workbook")
    parser.add_argument("--sheet", help="Sheet to preview")
    parser.add_argument(
        "--head", type=int, default=5, help="Number of rows to preview (default 5)"
    )
    args = parser.parse_args()

    try:
        with WorkbookProcessor(args.file_path) as wb:
            info = wb.get_file_info()
            print(f"Workbook: {info['file_path']} ({info['file_size']} bytes)")
            for name, sheet in info["sheets"].items():
                print(f"  {name}: {sheet['rows']} rows, columns={sheet['columns']}")
            if args.sheet:
                df = wb.read_sheet(args.sheet)
                print(df.head(args.head).to_string(index=False))
    except (FileNotFoundError, WorkbookProcessingError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
