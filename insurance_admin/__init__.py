"""Insurance admin backend: customers, policies and their stored documents."""
