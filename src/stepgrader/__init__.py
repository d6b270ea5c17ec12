"""Step-driven grading of client/server submissions."""
