"""IcsMap topology components: L2 aggregation, zone model, classification, path analysis and graph views."""
