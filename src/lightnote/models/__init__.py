"""Entity and database models for LightNote."""
