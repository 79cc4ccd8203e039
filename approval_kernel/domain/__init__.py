"""Pure domain layer of the approval kernel: value objects and rules, zero I/O."""
