"""HTTP API for the Stitch engine."""
