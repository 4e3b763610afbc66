"""SpecVault - vehicle specification unlock backend."""
