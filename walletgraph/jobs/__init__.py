# Background jobs (ARQ worker functions)
