"""Control plane: persistent scheduled task queue and its execution loop."""
