# =============================================================================
# Models Package — Domain Types and Pydantic V2 Schemas
# =============================================================================
#   - domain.py: states, worker kinds, store snapshots, DispatchMessage
#   - requests.py / responses.py: API contract
#
# API schemas are SEPARATE from the database models (db/models.py) and
# from the store snapshots, so the public contract and the storage layout
# can evolve independently.
# =============================================================================
