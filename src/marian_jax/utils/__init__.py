"""Small helpers shared by the graph, the optimizer and the CLI."""
