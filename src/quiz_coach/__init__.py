"""Generate practice quizzes with a language model and diagnose mistakes."""

__version__ = "0.1.0"
