"""bidroom core: auction model, lifecycle, storage and settlement."""
