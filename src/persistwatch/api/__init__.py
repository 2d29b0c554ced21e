# API Module - Local control surface
#
# FastAPI routers for the monitor and the containment engine, plus the
# control-token dependency that guards state-changing routes.
