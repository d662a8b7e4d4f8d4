"""Decision memory for the media curation pipeline."""
