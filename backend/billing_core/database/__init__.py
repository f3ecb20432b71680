"""Database session management and portable write helpers."""
