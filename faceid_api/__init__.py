"""
API Layer for the Face ID Gate

FastAPI application that lets a host shell (the journal UI) drive Face ID
sessions and query lockout/enrollment status over local HTTP.
"""
