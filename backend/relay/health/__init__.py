"""Process and upload-queue health monitoring."""
