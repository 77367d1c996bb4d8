"""HTTP server and background index worker."""
