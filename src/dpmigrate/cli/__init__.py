"""``dpmigrate`` command line."""
