"""Pipeline stages built on the core components: region splitting and batch runs."""
