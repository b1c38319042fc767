"""HTTP gateway: workflow storage, run dispatch and the webhook listener."""
