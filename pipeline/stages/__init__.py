"""Stage processors moving events from raw rows to the enriched library catalog."""
