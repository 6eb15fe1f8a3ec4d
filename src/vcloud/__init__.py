"""vcloud: wrapper over the Google Compute Engine gcloud tool."""

__version__ = "0.1.0"
