"""
API service package for PTO Connect.

Every protected route runs the same request-gating pipeline:
- Authentication: bearer tokens via Supabase or ``x-api-key`` keys
- Organization context: profile and organization lookup
- Rate limiting: tiered fixed-window counters
- Response caching: organization and permission aware cache-aside
- Permission gate: role hierarchy and per-organization overrides
"""
