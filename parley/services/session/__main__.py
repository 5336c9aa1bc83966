"""Entry point for: python3 -m parley.services.session"""
from parley.services.session.service import main

main()
