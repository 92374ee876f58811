"""Background workers (ARQ)"""
