"""Closing module - monthly closing lifecycle."""
