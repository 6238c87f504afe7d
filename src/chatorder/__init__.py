"""chatorder: WhatsApp message ingestion, grouping and order pipeline."""

__version__ = "1.0.0"
