"""Pure domain layer: values, types, ledger, payment rules, clock."""
