"""Cloud compute provider clients."""
