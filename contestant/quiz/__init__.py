"""Quiz primitives: modes, question formats, evaluation, the buzzer FSM and the runtime.

Kept free of broker and FastAPI concerns so it can be driven by commands, the API and tests alike.
"""
