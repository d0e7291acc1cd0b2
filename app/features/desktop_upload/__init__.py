"""Desktop upload pipeline: registry, coordinator, transfer engine and finalize."""
