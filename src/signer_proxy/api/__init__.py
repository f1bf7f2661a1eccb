"""HTTP API for signer-proxy."""
