"""
Document lifecycle module.

- Admin uploads create documents in `pending`
- Admin review moves them to `approved` (with assignments) or `rejected` (with notes)
- Employees only ever see approved documents assigned to them
- Meaningful actions are recorded to the append-only audit trail
"""
