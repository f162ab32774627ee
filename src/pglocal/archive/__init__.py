"""Archive acquisition: platform detection, download, verification, extraction, install cache."""
