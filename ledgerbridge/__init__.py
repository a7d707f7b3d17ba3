"""LedgerBridge - CRM to accounting sync bridge with managed OAuth credentials."""
