"""Record schemas shared by the trust registry stores and their callers."""
