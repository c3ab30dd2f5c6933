"""
Services Package

Core lifecycle and matching services plus the capability adapters
(embedding, text generation, browser automation) they depend on.
"""
