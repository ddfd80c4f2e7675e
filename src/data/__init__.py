"""Raw data sources and feature builders."""
