# Test fixtures package
