# domain - Typed entities and outcomes shared across layers
