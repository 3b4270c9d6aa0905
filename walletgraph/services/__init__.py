# Services layer for lookup pipeline business logic
