"""Order placement and discount engine service."""
