"""
Customers module.

Scope:
- Lead customers CRUD (list + create + edit + delete), quick status switch
- Follow-up log per customer
- Lifecycle: completing a lead into a contracted customer, stage-2 status tracking
- Owner-scoped visibility for employees; administrators see every row
"""
