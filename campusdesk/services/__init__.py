"""Domain services that write records and the audit trail."""
