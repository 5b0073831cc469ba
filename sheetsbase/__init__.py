"""SheetsBase: Google Sheets as a queryable table store."""

__version__ = "1.0.0"
