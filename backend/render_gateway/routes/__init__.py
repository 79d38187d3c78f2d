"""HTTP routers. Each reads the RenderGateway from request.app.state.gateway."""
