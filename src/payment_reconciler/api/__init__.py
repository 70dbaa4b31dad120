"""HTTP surface of the reconciler."""
