"""Exception taxonomy shared by services and blueprints."""
