"""Editorial desk: dashboard, claims, dismissals and feedback."""
