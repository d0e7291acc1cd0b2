"""Desktop upload agent application package."""
