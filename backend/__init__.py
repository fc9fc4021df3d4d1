"""Server-side packages."""
