"""Remote execution: SSH sessions, authentication and output parsing."""
