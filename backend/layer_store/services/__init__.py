"""Layer service, geometry validation and change broadcasting."""
