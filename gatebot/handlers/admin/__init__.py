from aiogram import Router

from .handlers import admin_handlers_router

admin_router = Router(name="admin_main")
admin_router.include_router(admin_handlers_router)
