"""Domain models for the patient journey, free of service dependencies."""
