"""
HTTP transport for the Hive signup signer.

Run with: uvicorn signer_app.main:app --port 3000
"""
