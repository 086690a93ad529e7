SERVICE_NAME = "inspector"
