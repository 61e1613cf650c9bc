"""
hotelops - 酒店运营后台

权限引擎 (authz) 的应用层：配置、SQLAlchemy 持久化、JWT 身份、FastAPI 路由。
"""
