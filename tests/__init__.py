"""
Test suite for the Park Angel Pricing and Revenue Engine

unit/         - one component at a time, brokers mocked
integration/  - services wired together through the ServiceFactory
"""
