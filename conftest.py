"""Root conftest so ``src`` is importable when running pytest from a checkout."""
