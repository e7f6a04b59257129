"""Payment gateway adapters (VNPay, MoMo, ZaloPay) and their signature codec."""
